"""Concurrent page extraction and narration for PDF documents."""

from pagenarrator.config import SchedulerConfig, ServiceSettings
from pagenarrator.models import Page, PageStatus, ProcessingState
from pagenarrator.scheduler import NarrationSession

__version__ = "0.1.0"

__all__ = [
    "NarrationSession",
    "Page",
    "PageStatus",
    "ProcessingState",
    "SchedulerConfig",
    "ServiceSettings",
    "__version__",
]
