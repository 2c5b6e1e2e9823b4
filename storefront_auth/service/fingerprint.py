from __future__ import annotations

from typing import Any, List, Optional

from storefront_auth.logging import get_logger
from storefront_auth.service.capabilities import Clock, Hasher, SignalSource, now_ms
from storefront_auth.storage.models import (
    Confidence,
    DeviceAuthResult,
    DeviceInfo,
    DeviceRiskAssessment,
    FingerprintResult,
    FingerprintValidation,
    RiskAction,
    RiskLevel,
)

logger = get_logger(__name__)

FINGERPRINT_KEY = "device_fingerprint"
FINGERPRINT_TIMESTAMP_KEY = "device_fingerprint_timestamp"

DEFAULT_MAX_AGE_MS = 30 * 24 * 60 * 60 * 1000
# Similarity thresholds for validate_fingerprint
HIGH_RISK_SIMILARITY = 0.7
MEDIUM_RISK_SIMILARITY = 0.9


class DeviceFingerprinter:
    """Derives a stable device identifier and scores device risk.

    The fingerprint is a SHA-256 hex digest over ten environment signals
    joined with ``|`` in a fixed order. The last accepted fingerprint is kept
    in the key-value store so later refreshes can detect a device change.
    """

    def __init__(
        self,
        kv: Any,
        *,
        hasher: Hasher,
        signals: SignalSource,
        clock: Clock,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
    ) -> None:
        self.kv = kv
        self.hasher = hasher
        self.signals = signals
        self.clock = clock
        self.max_age_ms = max_age_ms
        self.logger = logger

    @staticmethod
    def canonical_string(device_info: DeviceInfo) -> str:
        parts = [
            device_info.user_agent or "unknown",
            device_info.language or "unknown",
            device_info.platform or "unknown",
            device_info.screen_resolution or "0x0",
            device_info.timezone or "unknown",
            str(device_info.color_depth or 0),
            str(device_info.hardware_concurrency or 0),
            _format_memory(device_info.device_memory),
            "true" if device_info.cookie_enabled else "false",
            device_info.do_not_track or "null",
        ]
        return "|".join(parts)

    async def generate_fingerprint(self) -> FingerprintResult:
        device_info = self.signals.collect()
        fingerprint = await self.hasher.hexdigest(self.canonical_string(device_info))
        return FingerprintResult(
            fingerprint=fingerprint,
            device_info=device_info,
            timestamp=now_ms(self.clock),
            confidence=self.calculate_confidence(device_info),
        )

    @staticmethod
    def calculate_confidence(device_info: DeviceInfo) -> Confidence:
        score = 0
        if device_info.user_agent and len(device_info.user_agent) > 50:
            score += 2
        if device_info.screen_resolution and device_info.screen_resolution != "0x0":
            score += 2
        if device_info.timezone:
            score += 1
        if device_info.hardware_concurrency > 0:
            score += 1
        if device_info.device_memory:
            score += 1
        if device_info.color_depth > 0:
            score += 1
        if device_info.webdriver:
            score -= 2
        if not device_info.cookie_enabled:
            score -= 1

        if score >= 6:
            return Confidence.HIGH
        if score >= 3:
            return Confidence.MEDIUM
        return Confidence.LOW

    @staticmethod
    def compare_fingerprint_similarity(first: str, second: str) -> float:
        """Positional character match ratio; 1.0 only for identical digests.

        Hex digests of different inputs share roughly 1/16 of positions, so
        in practice any device change lands far below the high-risk cutoff.
        """
        if first == second:
            return 1.0
        longest = max(len(first), len(second))
        if longest == 0:
            return 1.0
        matches = sum(1 for a, b in zip(first, second) if a == b)
        return matches / longest

    def validate_fingerprint(self, current: str, stored: str) -> FingerprintValidation:
        similarity = self.compare_fingerprint_similarity(current, stored)
        if similarity < HIGH_RISK_SIMILARITY:
            return FingerprintValidation(False, similarity, RiskLevel.HIGH)
        if similarity < MEDIUM_RISK_SIMILARITY:
            # Allowed but flagged for monitoring
            return FingerprintValidation(True, similarity, RiskLevel.MEDIUM)
        return FingerprintValidation(True, similarity, RiskLevel.LOW)

    @staticmethod
    def assess_device_risk(device_info: DeviceInfo) -> DeviceRiskAssessment:
        factors: List[str] = []
        score = 0
        if device_info.webdriver:
            factors.append("Automated browser detected")
            score += 50
        if not device_info.cookie_enabled:
            factors.append("Cookies disabled")
            score += 20
        if device_info.do_not_track == "1":
            factors.append("Do Not Track enabled")
            score += 5
        user_agent = device_info.user_agent or ""
        if "bot" in user_agent or "crawler" in user_agent:
            factors.append("Bot-like user agent")
            score += 40
        if device_info.hardware_concurrency == 0:
            factors.append("No hardware concurrency info")
            score += 10
        if device_info.color_depth < 16:
            factors.append("Unusual color depth")
            score += 15

        if score >= 50:
            action = RiskAction.BLOCK
        elif score >= 20:
            action = RiskAction.CHALLENGE
        else:
            action = RiskAction.ALLOW
        return DeviceRiskAssessment(risk_score=score, risk_factors=factors, recommendation=action)

    async def get_stored_fingerprint(self) -> Optional[str]:
        return await self.kv.get(FINGERPRINT_KEY)

    async def store_fingerprint(self, fingerprint: str) -> None:
        await self.kv.set_many(
            {
                FINGERPRINT_KEY: fingerprint,
                FINGERPRINT_TIMESTAMP_KEY: str(now_ms(self.clock)),
            }
        )

    async def is_stored_fingerprint_expired(self, max_age_ms: Optional[int] = None) -> bool:
        raw = await self.kv.get(FINGERPRINT_TIMESTAMP_KEY)
        if not raw:
            return True
        try:
            stored_at = int(raw)
        except ValueError:
            return True
        limit = self.max_age_ms if max_age_ms is None else max_age_ms
        return now_ms(self.clock) - stored_at > limit

    async def clear_stored_fingerprint(self) -> None:
        await self.kv.delete(FINGERPRINT_KEY, FINGERPRINT_TIMESTAMP_KEY)

    async def validate_device_for_auth(self) -> DeviceAuthResult:
        result = await self.generate_fingerprint()
        stored = await self.get_stored_fingerprint()

        if not stored or await self.is_stored_fingerprint_expired():
            await self.store_fingerprint(result.fingerprint)
            self.logger.info("device_registered", confidence=result.confidence.value)
            return DeviceAuthResult(
                fingerprint=result.fingerprint,
                is_new_device=True,
                risk_level=RiskLevel.MEDIUM,
                device_info=result.device_info,
            )

        validation = self.validate_fingerprint(result.fingerprint, stored)
        if validation.is_valid:
            await self.store_fingerprint(result.fingerprint)
        else:
            self.logger.warning(
                "device_fingerprint_mismatch", similarity=round(validation.similarity, 3)
            )
        return DeviceAuthResult(
            fingerprint=result.fingerprint,
            is_new_device=False,
            risk_level=validation.risk_level,
            device_info=result.device_info,
        )


def _format_memory(value: Optional[float]) -> str:
    if value is None:
        return "unknown"
    # Match integral memory values without a trailing ".0"
    if float(value).is_integer():
        return str(int(value))
    return str(value)
