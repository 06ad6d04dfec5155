"""Core infrastructure: settings, logging, exceptions, clock."""

from .clock import Clock, ManualClock, SystemClock
from .config import settings
from .exceptions import (
    AppException,
    CacheMiss,
    CalculationFailed,
    InsufficientHistory,
    NoDataForInstrument,
    NotFoundError,
    ProviderUnavailable,
    RetryExhausted,
    ValidationError,
)
from .logging import get_logger, setup_logging


__all__ = [
    "AppException",
    "CacheMiss",
    "CalculationFailed",
    "Clock",
    "InsufficientHistory",
    "ManualClock",
    "NoDataForInstrument",
    "NotFoundError",
    "ProviderUnavailable",
    "RetryExhausted",
    "SystemClock",
    "ValidationError",
    "get_logger",
    "settings",
    "setup_logging",
]
