"""Injectable platform capabilities: wall clock, hashing and device signals."""

from __future__ import annotations

import asyncio
import hashlib
import locale
import os
import platform
import time
from typing import Optional, Protocol

from storefront_auth.storage.models import DeviceInfo


class Clock(Protocol):
    def now(self) -> float:
        """Seconds since the epoch."""

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def now_ms(clock: Clock) -> int:
    return int(clock.now() * 1000)


class Hasher(Protocol):
    async def hexdigest(self, text: str) -> str:
        ...


class Sha256Hasher:
    async def hexdigest(self, text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()


class SignalSource(Protocol):
    def collect(self) -> DeviceInfo:
        ...


class StaticSignalSource:
    """Signals reported by the host, e.g. forwarded from a browser client."""

    def __init__(self, device_info: DeviceInfo) -> None:
        self.device_info = device_info

    def update(self, device_info: DeviceInfo) -> None:
        self.device_info = device_info

    def collect(self) -> DeviceInfo:
        return self.device_info


class EnvironmentSignalSource:
    """Signals derived from the local process environment.

    Values the environment cannot report (screen, colour depth) come from
    configuration; anything still missing is left empty for the fingerprinter
    to substitute.
    """

    def __init__(
        self,
        *,
        user_agent: Optional[str] = None,
        language: Optional[str] = None,
        screen_resolution: str = "0x0",
        color_depth: int = 0,
    ) -> None:
        self.user_agent = user_agent
        self.language = language
        self.screen_resolution = screen_resolution
        self.color_depth = color_depth

    def _default_user_agent(self) -> str:
        return (
            f"storefront-auth ({platform.system()} {platform.release()}; "
            f"{platform.machine()}) Python/{platform.python_version()}"
        )

    def _language(self) -> Optional[str]:
        if self.language:
            return self.language
        lang = os.getenv("LANG") or locale.getlocale()[0]
        if not lang:
            return None
        return lang.split(".")[0].replace("_", "-")

    def _device_memory(self) -> Optional[float]:
        try:
            pages = os.sysconf("SC_PHYS_PAGES")
            page_size = os.sysconf("SC_PAGE_SIZE")
        except (AttributeError, ValueError, OSError):
            return None
        gib = pages * page_size / (1024 ** 3)
        # Coarse bucket like navigator.deviceMemory
        for bucket in (0.25, 0.5, 1, 2, 4, 8):
            if gib <= bucket:
                return float(bucket)
        return 8.0

    def collect(self) -> DeviceInfo:
        return DeviceInfo(
            user_agent=self.user_agent or self._default_user_agent(),
            language=self._language(),
            platform=platform.system() or None,
            screen_resolution=self.screen_resolution,
            timezone=time.tzname[0] if time.tzname else None,
            color_depth=self.color_depth,
            hardware_concurrency=os.cpu_count() or 0,
            device_memory=self._device_memory(),
            cookie_enabled=True,
            do_not_track=os.getenv("DO_NOT_TRACK"),
            webdriver=False,
        )
