"""leadflow: Flow execution and CRM field dispatch for lead management."""

from .contracts import (
    AuditEntry,
    FieldUpdateRequest,
    Flow,
    FlowRun,
    NodeLog,
    NodeSpec,
    RunResponse,
)
from .dispatch import FieldUpdateDispatcher
from .execute import FlowExecutor, create_run
from .http import HttpExecutor
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "AuditEntry",
    "FieldUpdateRequest",
    "Flow",
    "FlowRun",
    "NodeLog",
    "NodeSpec",
    "RunResponse",
    "FieldUpdateDispatcher",
    "FlowExecutor",
    "HttpExecutor",
    "create_run",
    "get_repository",
]
