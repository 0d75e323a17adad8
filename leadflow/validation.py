"""Static checks for flow definitions before they are stored or run."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel

from .contracts import Flow, HttpCallNode, TabularNode, parse_node
from .errors import LeadflowError


class FlowIssue(BaseModel):
    node_id: Optional[str] = None
    message: str

    def __str__(self) -> str:
        return f"{self.node_id}: {self.message}" if self.node_id else self.message


def validate_flow(flow: Flow) -> List[FlowIssue]:
    """Return every problem found in ``flow``; an empty list means it is runnable."""
    issues: List[FlowIssue] = []
    if not flow.nodes:
        issues.append(FlowIssue(message="flow has no nodes"))

    seen: set[str] = set()
    for spec in flow.nodes:
        if spec.id in seen:
            issues.append(FlowIssue(node_id=spec.id, message="duplicate node id"))
        seen.add(spec.id)

        try:
            node = parse_node(spec)
        except LeadflowError as exc:
            issues.append(FlowIssue(node_id=spec.id, message=str(exc)))
            continue

        if isinstance(node, HttpCallNode) and not node.url:
            issues.append(FlowIssue(node_id=spec.id, message="url is required"))
        elif isinstance(node, TabularNode) and not node.field:
            issues.append(FlowIssue(node_id=spec.id, message="field is required"))
    return issues
