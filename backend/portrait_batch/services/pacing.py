"""
Adaptive pacing for generation requests.

The recommended delay is a pure function of a job's persisted counters, so a
resumed job picks up exactly where the previous process left off.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from portrait_batch.core.config import settings


class AdjustmentType(str, Enum):
    EMERGENCY_BRAKE = "emergency_brake"
    SLOW_DOWN = "slow_down"
    MAINTAIN = "maintain"
    SPEED_UP = "speed_up"


@dataclass(frozen=True)
class PacingConfig:
    base_delay_ms: int = 1500
    min_delay_ms: int = 500
    max_delay_ms: int = 8000
    emergency_delay_ms: int = 6000
    adjustment_factor: float = 1.3
    success_threshold: float = 0.85
    low_success_threshold: float = 0.15
    emergency_failures: int = 3

    @classmethod
    def from_settings(cls) -> "PacingConfig":
        return cls(
            base_delay_ms=settings.PACING_BASE_DELAY_MS,
            min_delay_ms=settings.PACING_MIN_DELAY_MS,
            max_delay_ms=settings.PACING_MAX_DELAY_MS,
            emergency_delay_ms=settings.PACING_EMERGENCY_DELAY_MS,
            adjustment_factor=settings.PACING_ADJUSTMENT_FACTOR,
            success_threshold=settings.PACING_SUCCESS_THRESHOLD,
            low_success_threshold=settings.PACING_LOW_SUCCESS_THRESHOLD,
            emergency_failures=settings.PACING_EMERGENCY_FAILURES,
        )


@dataclass(frozen=True)
class SpeedRecommendation:
    delay_ms: int
    adjustment_type: AdjustmentType
    reasoning: str
    confidence: float
    success_rate: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "delay_ms": self.delay_ms,
            "adjustment_type": self.adjustment_type.value,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "success_rate": self.success_rate,
        }


def recommend_delay(
    completed: int,
    successful: int,
    failed: int,
    config: Optional[PacingConfig] = None,
) -> SpeedRecommendation:
    """Delay to wait before the next generation attempt.

    Rules are evaluated top to bottom and the first match wins: emergency
    brake on accumulated failures, slow down on a low success rate, speed up
    on a high one, otherwise keep the base delay.
    """
    config = config or PacingConfig.from_settings()
    base = config.base_delay_ms

    if failed >= config.emergency_failures:
        return SpeedRecommendation(
            delay_ms=config.emergency_delay_ms,
            adjustment_type=AdjustmentType.EMERGENCY_BRAKE,
            reasoning=f"Emergency brake: {failed} failures detected",
            confidence=0.95,
            success_rate=successful / completed if completed else None,
        )

    if completed <= 0:
        return SpeedRecommendation(
            delay_ms=base,
            adjustment_type=AdjustmentType.MAINTAIN,
            reasoning="No completed items yet - using base delay",
            confidence=0.5,
        )

    success_rate = successful / completed
    percent = round(success_rate * 100)

    if success_rate < config.low_success_threshold:
        return SpeedRecommendation(
            delay_ms=round(min(base * config.adjustment_factor, config.max_delay_ms)),
            adjustment_type=AdjustmentType.SLOW_DOWN,
            reasoning=f"High error rate: {100 - percent}% - slowing down",
            confidence=0.8,
            success_rate=success_rate,
        )

    if success_rate > config.success_threshold:
        return SpeedRecommendation(
            delay_ms=round(max(base / config.adjustment_factor, config.min_delay_ms)),
            adjustment_type=AdjustmentType.SPEED_UP,
            reasoning=f"High success rate: {percent}% - speeding up",
            confidence=0.7,
            success_rate=success_rate,
        )

    return SpeedRecommendation(
        delay_ms=base,
        adjustment_type=AdjustmentType.MAINTAIN,
        reasoning=f"Stable performance: {percent}% success rate - maintaining speed",
        confidence=0.5,
        success_rate=success_rate,
    )
