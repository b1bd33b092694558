"""Browser automation provider adapter."""

from browsercron.modules.browser.client import BaseTaskProvider, BrowserUseClient
from browsercron.modules.browser.models import ExecutionResult, ExecutionStatus, StepEvent
from browsercron.modules.browser.service import BrowserService

__all__ = [
    "BaseTaskProvider",
    "BrowserUseClient",
    "BrowserService",
    "ExecutionResult",
    "ExecutionStatus",
    "StepEvent",
]
