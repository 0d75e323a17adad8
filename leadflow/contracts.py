"""Core data contracts for leadflow flows, runs and field dispatches."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import InvalidRunTransition, NodeValidationError, UnsupportedNodeType

logger = logging.getLogger(__name__)

RunStatus = Literal["pending", "running", "success", "failed"]
NodeStatus = Literal["success", "failed"]
AuditStatus = Literal["OK", "ERROR", "RUNNING"]
Target = Literal["internal-store", "external-crm"]

NODE_TYPES = ("delay", "http_call", "tabular")

# pending -> failed covers a run whose flow could not be loaded
_RUN_TRANSITIONS: Dict[str, tuple[str, ...]] = {
    "pending": ("running", "failed"),
    "running": ("success", "failed"),
    "success": (),
    "failed": (),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Flow definitions
class NodeSpec(BaseModel):
    """One stored step of a flow, as written by its author."""

    id: str
    type: str
    name: Optional[str] = None
    params: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("params", "config")
    )

    @model_validator(mode="before")
    @classmethod
    def _collect_inline_params(cls, data: Any) -> Any:
        # allow {"id": "wait", "type": "delay", "ms": 10} as shorthand
        if not isinstance(data, dict) or "params" in data or "config" in data:
            return data
        reserved = {"id", "type", "name"}
        return {
            **{k: v for k, v in data.items() if k in reserved},
            "params": {k: v for k, v in data.items() if k not in reserved},
        }


class Flow(BaseModel):
    """Immutable, ordered pipeline of nodes."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    nodes: List[NodeSpec] = Field(default_factory=list)


class _NodeBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str


class DelayNode(_NodeBase):
    type: Literal["delay"]
    ms: Optional[int] = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("ms", "duration", "durationMs", "duration_ms"),
    )


class HttpCallNode(_NodeBase):
    type: Literal["http_call"]
    url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("url", "endpoint")
    )
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: Optional[int] = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeoutMs", "timeout_ms")
    )


class TabularNode(_NodeBase):
    type: Literal["tabular"]
    entity_id: Optional[Union[int, str]] = Field(
        default=None, validation_alias=AliasChoices("entityId", "leadId", "entity_id")
    )
    action_label: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("actionLabel", "action_label")
    )
    field: Optional[str] = None
    value: Any = None
    webhook_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("webhookUrl", "webhook_url")
    )
    target: Target = "external-crm"
    additional_fields: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("additionalFields", "additional_fields"),
    )
    selected_value_display: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("selectedValueDisplay", "selected_value_display"),
    )

    @field_validator("additional_fields", mode="before")
    @classmethod
    def _normalize_additional_fields(cls, v: Any) -> Any:
        # Editors store these as [{"field": ..., "value": ...}]
        if v is None:
            return {}
        if isinstance(v, list):
            return {
                item["field"]: item.get("value")
                for item in v
                if isinstance(item, dict) and item.get("field")
            }
        return v


Node = Annotated[
    Union[DelayNode, HttpCallNode, TabularNode], Field(discriminator="type")
]
_NODE_ADAPTER: TypeAdapter[Node] = TypeAdapter(Node)


def parse_node(spec: NodeSpec) -> Node:
    """Turn a stored node into its typed variant.

    Raises:
        UnsupportedNodeType: If the type tag is not one of ``NODE_TYPES``.
        NodeValidationError: If the parameters do not fit the node type.
    """
    if spec.type not in NODE_TYPES:
        raise UnsupportedNodeType(spec.type)
    try:
        return _NODE_ADAPTER.validate_python(
            {**spec.params, "id": spec.id, "type": spec.type}
        )
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first["loc"][1:]) or spec.type
        raise NodeValidationError(
            f"Invalid {spec.type} node {spec.id}: {location}: {first['msg']}"
        ) from exc


# ---------------------------------------------------------------------------
# Runs
class NodeLog(BaseModel):
    """Outcome of one executed node."""

    node_id: str
    type: str
    started_at: datetime
    finished_at: datetime
    status: NodeStatus
    output: Any = None
    error: Optional[str] = None


class FlowRun(BaseModel):
    """Mutable execution record of a flow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow_id: str
    status: RunStatus = "pending"
    entity_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    logs: List[NodeLog] = Field(default_factory=list)
    output: Any = None

    @field_validator("entity_id", mode="before")
    @classmethod
    def _entity_id_as_str(cls, v: Any) -> Any:
        return None if v is None else str(v)

    def transition(self, target: RunStatus) -> None:
        """Move to ``target``; statuses only ever move forward."""
        if target not in _RUN_TRANSITIONS[self.status]:
            raise InvalidRunTransition(self.status, target)
        logger.debug(f"Run {self.id}: {self.status} -> {target}")
        self.status = target


class PipelineContext(BaseModel):
    """Value threaded explicitly from one node executor to the next."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    initial_input: Dict[str, Any] = Field(default_factory=dict)
    entity_id: Optional[str] = None
    acting_user: Optional[str] = None
    last_output: Any = None

    def advance(self, output: Any) -> "PipelineContext":
        return self.model_copy(update={"last_output": output})


class NodeOutcome(BaseModel):
    output: Any = None
    context: PipelineContext


class ErrorInfo(BaseModel):
    kind: Literal["not_found", "bad_request", "internal_error"]
    message: str


class RunResponse(BaseModel):
    """Result of one engine invocation."""

    run_id: str
    status: Optional[RunStatus] = None
    output: Any = None
    logs: List[NodeLog] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status == "success"


# ---------------------------------------------------------------------------
# Audit
class AuditEntry(BaseModel):
    """Append-only record of an attempted change and its outcome."""

    id: Optional[int] = None
    entity_id: str
    action_label: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: AuditStatus
    error: Optional[str] = None
    acting_user: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("entity_id", mode="before")
    @classmethod
    def _entity_id_as_str(cls, v: Any) -> Any:
        return str(v)


# ---------------------------------------------------------------------------
# Field dispatch
class ContactSnapshot(BaseModel):
    """Companion messaging contact as last seen by the caller."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    external_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("external_id", "externalId", "bitrix_id")
    )
    custom_attributes: Dict[str, Any] = Field(default_factory=dict)


class FieldUpdateRequest(BaseModel):
    """Everything needed to apply one field change for one entity."""

    entity_id: Union[int, str]
    acting_user: Optional[str] = None
    field: str
    value: Any = None
    target: Target = "external-crm"
    additional_fields: Dict[str, Any] = Field(default_factory=dict)
    contact: Optional[ContactSnapshot] = None
    enumeration_fields: Optional[List[Dict[str, Any]]] = None
    metadata: Optional[Dict[str, Any]] = None
    webhook_url: Optional[str] = None
    action_label: Optional[str] = None
    selected_value_display: Optional[str] = None

    def field_values(self) -> Dict[str, Any]:
        return {self.field: self.value, **self.additional_fields}


class DispatchResult(BaseModel):
    """Tagged outcome of a field dispatch."""

    status: Literal["success", "error"]
    message: str
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[Literal["not_found", "bad_request", "internal_error"]] = None
    audit_recorded: bool = True

    @property
    def ok(self) -> bool:
        return self.status == "success"


# ---------------------------------------------------------------------------
# HTTP
class HttpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    params: List[tuple[str, str]] = Field(default_factory=list)
    timeout_ms: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("timeout_ms", "timeoutMs")
    )


class HttpResponse(BaseModel):
    status: int
    reason: str = ""
    data: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300
