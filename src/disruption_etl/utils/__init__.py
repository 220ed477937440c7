from .errors import (
    DisruptionETLError,
    FetchError,
    DisruptionNotFoundError,
    InvalidGeohashError,
    DataValidationError,
)
from .throttling import RateLimiter, RateLimiterConfig, MinDelayRateLimiter, NoOpRateLimiter
from .data_utils import utcnow, to_json

__all__ = [
    "DisruptionETLError",
    "FetchError",
    "DisruptionNotFoundError",
    "InvalidGeohashError",
    "DataValidationError",
    "RateLimiter",
    "RateLimiterConfig",
    "MinDelayRateLimiter",
    "NoOpRateLimiter",
    "utcnow",
    "to_json",
]
