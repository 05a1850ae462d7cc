"""Infrastructure modules for the trading engine"""

from .cache import CacheRegistry, CacheStore  # noqa: F401
from .clock import Clock, PeriodicTask  # noqa: F401
from .metrics import MetricsRecorder, ScanStats  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401

__all__ = [
	"CacheRegistry",
	"CacheStore",
	"Clock",
	"PeriodicTask",
	"MetricsRecorder",
	"ScanStats",
	"RateLimiter",
]
