"""
mnemo recency -- age-based time score and its blend with relevance.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from mnemo.errors import ConfigError, ValidationError

SECONDS_PER_DAY = 86400.0


class DecayFunction(Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass(frozen=True)
class DecayConfig:
    """Parameters of the time score.

    ``lambda_`` is the exponential rate per second (1e-6 halves the score in
    roughly eight days). ``horizon_days`` is where linear decay reaches 0.
    ``offset_days`` is a grace period during which nothing decays.
    """

    function: DecayFunction = DecayFunction.EXPONENTIAL
    lambda_: float = 1e-6
    horizon_days: float = 30.0
    offset_days: float = 0.0

    def validate(self) -> None:
        if not isinstance(self.function, DecayFunction):
            raise ConfigError("decay_function", f"unknown decay function {self.function!r}")
        if self.function is DecayFunction.EXPONENTIAL:
            if not (1e-10 <= self.lambda_ <= 1e-3):
                raise ConfigError("decay_lambda", f"{self.lambda_} is outside 1e-10..1e-3")
        if not (self.horizon_days > 0 and math.isfinite(self.horizon_days)):
            raise ConfigError("decay_horizon_days", f"{self.horizon_days} must be a positive number")
        if not (self.offset_days >= 0 and math.isfinite(self.offset_days)):
            raise ConfigError("decay_offset_days", f"{self.offset_days} must be >= 0")


def time_score(created_at: datetime, now: datetime, config: DecayConfig) -> float:
    """Map an age to a freshness score in [0, 1]; 1.0 means brand new.

    Records dated in the future count as age 0.
    """
    age = (now - created_at).total_seconds()
    effective = max(0.0, age - config.offset_days * SECONDS_PER_DAY)
    if config.function is DecayFunction.LINEAR:
        return max(0.0, 1.0 - effective / (config.horizon_days * SECONDS_PER_DAY))
    exponent = -config.lambda_ * effective
    # exp() underflows to 0.0 well before this, skip the call
    if exponent < -745.0:
        return 0.0
    return math.exp(exponent)


def validate_recency_weight(weight: float) -> float:
    if weight is None or isinstance(weight, bool) or not isinstance(weight, (int, float)):
        raise ValidationError(f"recency weight must be a number, got {weight!r}")
    if not (0.0 <= weight <= 1.0):
        raise ValidationError(f"recency weight must be within [0, 1], got {weight}")
    return float(weight)


def apply_recency_weight(base_score: float, tau: float, weight: float) -> float:
    """``(1 - w) * base + w * tau``; a zero weight returns ``base_score`` untouched."""
    if weight == 0:
        return base_score
    return (1.0 - weight) * base_score + weight * tau
