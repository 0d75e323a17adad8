"""Helpers for reading flow definitions and formatting runs in the CLI."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import yaml

from leadflow.contracts import Flow, FlowRun


def load_flow_file(path: Path) -> Flow:
    """Read a YAML or JSON flow definition from ``path``."""
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a flow mapping")
    data.setdefault("name", path.stem)
    return Flow.model_validate(data)


def parse_input(raw: Optional[str]) -> dict[str, Any]:
    """Parse the ``--input`` JSON object passed to ``run`` commands."""
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("input must be a JSON object")
    return value


def _format_run_line(run: FlowRun) -> str:
    return "\t".join(
        [run.id, run.flow_id, run.status, run.entity_id or "-", str(run.created_at)]
    )
