"""Flow execution engine for leadflow."""

from __future__ import annotations

import asyncio
import base64
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Optional, assert_never

from .audit import AuditLog
from .config import LeadflowConfig, load_config
from .contracts import (
    AuditStatus,
    DelayNode,
    ErrorInfo,
    FieldUpdateRequest,
    Flow,
    FlowRun,
    HttpCallNode,
    HttpRequest,
    NodeLog,
    NodeOutcome,
    NodeSpec,
    PipelineContext,
    RunResponse,
    TabularNode,
    parse_node,
    utcnow,
)
from .dispatch import FieldUpdateDispatcher
from .errors import (
    DispatchFailed,
    FlowNotFound,
    LeadflowError,
    MissingEntityId,
    MissingNodeParameter,
    PreconditionError,
    RunAlreadyClaimed,
    RunNotFound,
    error_kind,
    error_message,
)
from .http import HttpExecutor
from .persistence import Repository
from .sync import build_sync_channel
from .templating import render

logger = logging.getLogger(__name__)

FLOW_LOOKUP_NODE = "flow"


def _jsonable(data: Any) -> Any:
    if isinstance(data, (bytes, bytearray)):
        return base64.b64encode(bytes(data)).decode("ascii")
    return data


def _first_present(*values: Any) -> Any:
    # 0 is a valid entity id
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _entity_context(run: FlowRun, inputs: dict[str, Any]) -> Optional[str]:
    entity = _first_present(run.entity_id, inputs.get("entityId"), inputs.get("leadId"))
    return None if entity is None else str(entity)


async def create_run(
    repository: Repository,
    flow_id: str,
    entity_id: Any = None,
    created_by: Optional[str] = None,
    initial_input: Optional[dict[str, Any]] = None,
) -> FlowRun:
    """Create a pending run for an existing flow."""
    if await repository.get_flow(flow_id) is None:
        raise FlowNotFound(flow_id)
    run = FlowRun(
        flow_id=flow_id,
        entity_id=entity_id,
        created_by=created_by,
        input=initial_input or {},
    )
    await repository.create_run(run)
    logger.info(f"Created run {run.id} for flow {flow_id}")
    return run


class FlowExecutor:
    """Runs the nodes of a stored flow, in order, for one run record.

    Nodes never run concurrently within a run. The first failing node stops
    the run; progress is persisted after every successful node so observers
    see the log list grow while the run is in flight.
    """

    def __init__(
        self,
        repository: Repository,
        http: HttpExecutor | None = None,
        dispatcher: FieldUpdateDispatcher | None = None,
        config: LeadflowConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._config = config or load_config()
        self._http = http or HttpExecutor(
            default_timeout_ms=self._config.http.default_timeout_ms
        )
        self._dispatcher = dispatcher or FieldUpdateDispatcher(
            repository,
            http=self._http,
            sync_channel=build_sync_channel(self._config, self._http),
            config=self._config,
        )
        self._audit = AuditLog(repository)
        self._sleep = sleep

    async def execute(
        self, run_id: str, initial_input: Optional[dict[str, Any]] = None
    ) -> RunResponse:
        """Execute the pending run ``run_id``.

        Args:
            run_id: Identifier of a run previously created for a flow.
            initial_input: Values merged over the input stored with the run.

        Returns:
            The run's status, output and node logs, or an error with the logs
            produced before the failure.
        """
        run = await self._repository.get_run(run_id)
        if run is None:
            exc = RunNotFound(run_id)
            logger.error(str(exc))
            return RunResponse(run_id=run_id, error=_error_info(exc))
        if run.status != "pending":
            exc = RunAlreadyClaimed(run.id, run.status)
            logger.warning(str(exc))
            return RunResponse(
                run_id=run.id, status=run.status, logs=run.logs, error=_error_info(exc)
            )

        inputs = {**run.input, **(initial_input or {})}
        context = PipelineContext(
            run_id=run.id,
            initial_input=inputs,
            entity_id=_entity_context(run, inputs),
            acting_user=run.created_by,
        )

        try:
            return await self._run(run, context)
        except Exception as exc:
            return await self._abort(run, context, exc)

    async def _run(self, run: FlowRun, context: PipelineContext) -> RunResponse:
        flow = await self._repository.get_flow(run.flow_id)
        if flow is None:
            return await self._fail_before_start(run, FlowNotFound(run.flow_id), context)
        if not flow.nodes:
            return await self._fail_before_start(
                run, PreconditionError(f"Flow {flow.name} has no nodes"), context
            )

        run.transition("running")
        run.started_at = utcnow()
        run.logs = []
        await self._repository.mark_run_started(run.id, run.started_at)
        logger.info(f"Run {run.id}: starting flow {flow.name} ({len(flow.nodes)} nodes)")

        for position, spec in enumerate(flow.nodes, start=1):
            started_at = utcnow()
            logger.info(
                f"Run {run.id}: node {position}/{len(flow.nodes)} {spec.id} ({spec.type})"
            )
            try:
                outcome = await self._run_node(spec, context)
            except Exception as exc:
                message = error_message(exc)
                logger.error(f"Run {run.id}: node {spec.id} failed: {message}")
                run.logs.append(
                    NodeLog(
                        node_id=spec.id,
                        type=spec.type,
                        started_at=started_at,
                        finished_at=utcnow(),
                        status="failed",
                        error=message,
                    )
                )
                return await self._finish_failed(run, flow.name, context, exc, spec.id)

            run.logs.append(
                NodeLog(
                    node_id=spec.id,
                    type=spec.type,
                    started_at=started_at,
                    finished_at=utcnow(),
                    status="success",
                    output=outcome.output,
                )
            )
            await self._repository.update_run_logs(run.id, run.logs)
            context = outcome.context

        return await self._finish_success(run, flow, context)

    # ------------------------------------------------------------------
    # Node executors
    async def _run_node(self, spec: NodeSpec, context: PipelineContext) -> NodeOutcome:
        node = parse_node(spec)
        if isinstance(node, DelayNode):
            return await self._run_delay(node, context)
        if isinstance(node, HttpCallNode):
            return await self._run_http_call(node, context)
        if isinstance(node, TabularNode):
            return await self._run_tabular(node, context)
        assert_never(node)

    async def _run_delay(self, node: DelayNode, context: PipelineContext) -> NodeOutcome:
        waited_ms = node.ms or 0
        if waited_ms:
            await self._sleep(waited_ms / 1000)
        return NodeOutcome(output={"waited_ms": waited_ms}, context=context)

    async def _run_http_call(
        self, node: HttpCallNode, context: PipelineContext
    ) -> NodeOutcome:
        if not node.url:
            raise MissingNodeParameter("http_call", "url")
        variables = {**context.initial_input, "entityId": context.entity_id}
        response = await self._http.execute(
            HttpRequest(
                url=render(node.url, variables),
                method=node.method,
                headers=render(node.headers, variables),
                body=render(node.body, variables),
                timeout_ms=node.timeout_ms,
            )
        )
        output = {
            "status": response.status,
            "data": _jsonable(response.data),
            "headers": response.headers,
        }
        return NodeOutcome(output=output, context=context.advance(output))

    async def _run_tabular(self, node: TabularNode, context: PipelineContext) -> NodeOutcome:
        inputs = context.initial_input
        entity_id = _first_present(
            node.entity_id, inputs.get("entityId"), inputs.get("leadId"), context.entity_id
        )
        if entity_id is None:
            raise MissingEntityId()
        if not node.field:
            raise MissingNodeParameter("tabular", "field")

        variables = {
            **inputs,
            "value": node.value,
            "entityId": entity_id,
            "date": inputs.get("scheduledDate") or date.today().isoformat(),
            "time": inputs.get("scheduledTime", ""),
        }
        rendered = {key: render(value, variables) for key, value in node.additional_fields.items()}
        additional = {key: value for key, value in rendered.items() if value != ""}

        result = await self._dispatcher.dispatch(
            FieldUpdateRequest(
                entity_id=entity_id,
                acting_user=context.acting_user,
                field=node.field,
                value=node.value,
                target=node.target,
                additional_fields=additional,
                contact=inputs.get("contact"),
                enumeration_fields=inputs.get("enumerationFields"),
                metadata={"run_id": context.run_id, "node_id": node.id},
                webhook_url=node.webhook_url,
                action_label=node.action_label,
                selected_value_display=node.selected_value_display,
            )
        )
        if not result.ok:
            raise DispatchFailed(
                result.error or result.message, kind=result.error_kind or "internal_error"
            )
        return NodeOutcome(
            output=result.model_dump(mode="json", exclude_none=True), context=context
        )

    # ------------------------------------------------------------------
    # Terminal points
    async def _fail_before_start(
        self, run: FlowRun, exc: LeadflowError, context: PipelineContext
    ) -> RunResponse:
        message = error_message(exc)
        now = utcnow()
        logger.error(f"Run {run.id}: {message}")
        run.logs = [
            NodeLog(
                node_id=FLOW_LOOKUP_NODE,
                type="flow_lookup",
                started_at=now,
                finished_at=now,
                status="failed",
                error=message,
            )
        ]
        return await self._finish_failed(run, run.flow_id, context, exc, None)

    async def _finish_failed(
        self,
        run: FlowRun,
        flow_name: str,
        context: PipelineContext,
        exc: BaseException,
        node_id: Optional[str],
    ) -> RunResponse:
        message = error_message(exc)
        run.transition("failed")
        run.finished_at = utcnow()
        await self._repository.mark_run_finished(
            run.id, "failed", run.finished_at, run.logs, None
        )
        await self._record_run_outcome(
            run,
            context,
            f"Flow: {flow_name}",
            {"flow_id": run.flow_id, "run_id": run.id, "node_id": node_id},
            "ERROR",
            message,
        )
        logger.info(f"Run {run.id}: failed after {len(run.logs)} node log(s)")
        return RunResponse(
            run_id=run.id,
            status="failed",
            logs=run.logs,
            error=ErrorInfo(kind=error_kind(exc), message=message),
        )

    async def _finish_success(
        self, run: FlowRun, flow: Flow, context: PipelineContext
    ) -> RunResponse:
        run.transition("success")
        run.finished_at = utcnow()
        run.output = context.last_output
        await self._repository.mark_run_finished(
            run.id, "success", run.finished_at, run.logs, run.output
        )
        await self._record_run_outcome(
            run,
            context,
            f"Flow: {flow.name}",
            {"flow_id": flow.id, "run_id": run.id, "nodes": len(run.logs)},
            "OK",
        )
        logger.info(f"Run {run.id}: completed flow {flow.name}")
        return RunResponse(
            run_id=run.id, status="success", output=run.output, logs=run.logs
        )

    async def _abort(
        self, run: FlowRun, context: PipelineContext, exc: Exception
    ) -> RunResponse:
        """Terminate a run whose own bookkeeping failed.

        Reached when a repository call raises outside any node. The failed
        status is persisted on a best-effort basis and the response carries
        every node log produced so far.
        """
        message = error_message(exc)
        logger.exception(f"Run {run.id}: aborted: {message}")
        run.finished_at = utcnow()
        try:
            await self._repository.mark_run_finished(
                run.id, "failed", run.finished_at, run.logs, None
            )
        except Exception:
            logger.exception(f"Run {run.id}: could not persist failed status")
        await self._record_run_outcome(
            run,
            context,
            f"Flow: {run.flow_id}",
            {"flow_id": run.flow_id, "run_id": run.id},
            "ERROR",
            message,
        )
        return RunResponse(
            run_id=run.id,
            status="failed",
            logs=run.logs,
            error=ErrorInfo(kind=error_kind(exc), message=message),
        )

    async def _record_run_outcome(
        self,
        run: FlowRun,
        context: PipelineContext,
        action_label: str,
        payload: dict[str, Any],
        status: AuditStatus,
        error: Optional[str] = None,
    ) -> None:
        # written last at every terminal point; a failing audit store never
        # changes the already persisted run status
        if context.entity_id is None:
            return
        try:
            await self._audit.record_outcome(
                entity_id=context.entity_id,
                action_label=action_label,
                payload=payload,
                status=status,
                error=error,
                acting_user=context.acting_user,
            )
        except Exception:
            logger.exception(f"Run {run.id}: could not write audit entry")


def _error_info(exc: LeadflowError) -> ErrorInfo:
    return ErrorInfo(kind=exc.kind, message=error_message(exc))
