"""Error taxonomy for leadflow flows and field dispatches."""

from __future__ import annotations

from typing import Literal

ErrorKind = Literal["not_found", "bad_request", "internal_error"]


class LeadflowError(Exception):
    """Base class for all engine and dispatcher errors."""

    kind: ErrorKind = "internal_error"


# Precondition errors -------------------------------------------------------
class PreconditionError(LeadflowError):
    kind: ErrorKind = "bad_request"


class UnsupportedNodeType(PreconditionError):
    def __init__(self, node_type: str) -> None:
        super().__init__(f"Unsupported node type: {node_type}")
        self.node_type = node_type


class MissingWebhookUrl(PreconditionError):
    def __init__(self) -> None:
        super().__init__("No CRM webhook URL configured for external-crm target")


class MissingEntityId(PreconditionError):
    def __init__(self) -> None:
        super().__init__("entityId is required for tabular nodes")


class MissingNodeParameter(PreconditionError):
    def __init__(self, node_type: str, parameter: str) -> None:
        super().__init__(f"{parameter} is required for {node_type} nodes")
        self.parameter = parameter


class NodeValidationError(PreconditionError):
    """Node parameters failed validation."""


class RunAlreadyClaimed(PreconditionError):
    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(f"Run {run_id} is already {status}")


class InvalidRunTransition(LeadflowError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move run from {current} to {target}")


# Lookup errors -------------------------------------------------------------
class NotFoundError(LeadflowError):
    kind: ErrorKind = "not_found"


class RunNotFound(NotFoundError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Flow run {run_id} not found")


class FlowNotFound(NotFoundError):
    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow {flow_id} not found")


# Transport and domain errors -----------------------------------------------
class HttpCallError(LeadflowError):
    """Network failure while performing an outbound call."""


class HttpTimeoutError(HttpCallError):
    def __init__(self, url: str, timeout_ms: int) -> None:
        super().__init__(f"HTTP request to {url} timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class CrmRequestError(LeadflowError):
    """The CRM answered with a non-success HTTP status."""


class CrmResponseError(LeadflowError):
    """The CRM body carries an explicit error indicator."""


class SyncChannelError(LeadflowError):
    """The downstream sync channel rejected the update."""


class DispatchFailed(LeadflowError):
    """A field dispatch returned an error result inside a flow."""

    def __init__(self, message: str, kind: ErrorKind = "internal_error") -> None:
        super().__init__(message)
        self.kind = kind


def error_message(exc: BaseException) -> str:
    """Normalize an exception into a plain message for logs and audit entries."""
    return str(exc) or exc.__class__.__name__


def error_kind(exc: BaseException) -> ErrorKind:
    return getattr(exc, "kind", "internal_error")
