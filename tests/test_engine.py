"""End-to-end tests for the flow execution engine."""

import asyncio
import time

import httpx
import pytest

from leadflow import FlowExecutor, create_run
from leadflow.config import CrmConfig, LeadflowConfig
from leadflow.contracts import Flow, NodeSpec
from leadflow.errors import FlowNotFound
from leadflow.persistence import InMemoryRepository


async def _no_sleep(_seconds):
    return None


def _lead_flow(target: str) -> Flow:
    return Flow(
        name="Qualify lead",
        nodes=[
            NodeSpec(id="wait", type="delay", params={"ms": 10}),
            NodeSpec(
                id="set_status",
                type="tabular",
                params={
                    "entityId": 42,
                    "field": "STATUS",
                    "value": "NEW",
                    "target": target,
                },
            ),
        ],
    )


async def _start(repo, flow: Flow, **kwargs):
    await repo.save_flow(flow)
    return await create_run(repo, flow.id, **kwargs)


@pytest.mark.asyncio
async def test_internal_store_flow_succeeds(repo, config):
    run = await _start(repo, _lead_flow("internal-store"))
    executor = FlowExecutor(repo, config=config)

    response = await executor.execute(run.id)

    assert response.ok
    assert response.status == "success"
    assert [log.node_id for log in response.logs] == ["wait", "set_status"]
    assert all(log.status == "success" for log in response.logs)

    record = await repo.get_record("42")
    assert record["STATUS"] == "NEW"

    audit = await repo.list_audit("42")
    assert len(audit) == 1
    assert audit[0].status == "OK"

    stored = await repo.get_run(run.id)
    assert stored.status == "success"
    assert stored.started_at is not None
    assert stored.finished_at is not None
    assert len(stored.logs) == 2


@pytest.mark.asyncio
async def test_crm_flow_without_webhook_fails(repo, config):
    run = await _start(repo, _lead_flow("external-crm"))
    executor = FlowExecutor(repo, config=config)

    response = await executor.execute(run.id)

    assert not response.ok
    assert response.status == "failed"
    assert response.error.kind == "bad_request"
    assert "webhook" in response.error.message
    assert [(log.node_id, log.status) for log in response.logs] == [
        ("wait", "success"),
        ("set_status", "failed"),
    ]

    audit = await repo.list_audit("42")
    assert len(audit) == 1
    assert audit[0].status == "ERROR"
    assert "webhook" in audit[0].error

    stored = await repo.get_run(run.id)
    assert stored.status == "failed"
    assert len(stored.logs) == 2
    assert await repo.get_record("42") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("failing_position", [1, 2, 3, 4])
async def test_first_failure_stops_the_run(repo, config, failing_position):
    nodes = [NodeSpec(id=f"n{i}", type="delay", params={"ms": 0}) for i in range(1, 5)]
    nodes[failing_position - 1] = NodeSpec(id=f"n{failing_position}", type="teleport")
    flow = Flow(name="Four steps", nodes=nodes)
    run = await _start(repo, flow)

    response = await FlowExecutor(repo, config=config).execute(run.id)

    assert response.status == "failed"
    assert len(response.logs) == failing_position
    assert [log.status for log in response.logs] == (
        ["success"] * (failing_position - 1) + ["failed"]
    )
    assert response.logs[-1].error == "Unsupported node type: teleport"
    stored = await repo.get_run(run.id)
    assert stored.status == "failed"
    assert len(stored.logs) == failing_position


@pytest.mark.asyncio
async def test_successful_flow_logs_every_node_in_order(repo, config):
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    flow = Flow(
        name="Waits",
        nodes=[
            NodeSpec(id="a", type="delay", params={"ms": 5}),
            NodeSpec(id="b", type="delay", params={"duration": 20}),
            NodeSpec(id="c", type="delay", params={"durationMs": 0}),
        ],
    )
    run = await _start(repo, flow)

    response = await FlowExecutor(repo, config=config, sleep=record_sleep).execute(run.id)

    assert response.status == "success"
    assert [log.node_id for log in response.logs] == ["a", "b", "c"]
    assert sleeps == [0.005, 0.02]
    stored = await repo.get_run(run.id)
    assert [log.node_id for log in stored.logs] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_missing_run_is_not_found(repo, config):
    response = await FlowExecutor(repo, config=config).execute("no-such-run")

    assert response.error.kind == "not_found"
    assert response.logs == []
    assert await repo.list_runs() == []
    assert await repo.list_audit() == []


@pytest.mark.asyncio
async def test_missing_flow_fails_run_with_single_log(repo, config):
    flow = _lead_flow("internal-store")
    run = await _start(repo, flow, entity_id=42)
    repo._flows.clear()

    response = await FlowExecutor(repo, config=config).execute(run.id)

    assert response.status == "failed"
    assert response.error.kind == "not_found"
    assert len(response.logs) == 1
    assert response.logs[0].status == "failed"
    stored = await repo.get_run(run.id)
    assert stored.status == "failed"
    assert stored.finished_at is not None
    audit = await repo.list_audit("42")
    assert [entry.status for entry in audit] == ["ERROR"]


@pytest.mark.asyncio
async def test_create_run_requires_flow(repo):
    with pytest.raises(FlowNotFound):
        await create_run(repo, "missing")


@pytest.mark.asyncio
async def test_run_cannot_be_executed_twice(repo, config):
    run = await _start(repo, Flow(name="One", nodes=[NodeSpec(id="a", type="delay")]))
    executor = FlowExecutor(repo, config=config, sleep=_no_sleep)

    first = await executor.execute(run.id)
    second = await executor.execute(run.id)

    assert first.status == "success"
    assert second.error.kind == "bad_request"
    assert second.status == "success"
    stored = await repo.get_run(run.id)
    assert len(stored.logs) == 1


@pytest.mark.asyncio
async def test_http_call_timeout_is_bounded(repo, config, mock_http):
    async def never_answers(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    flow = Flow(
        name="Slow",
        nodes=[
            NodeSpec(
                id="call",
                type="http_call",
                params={"url": "http://slow.test/ping", "timeoutMs": 100},
            )
        ],
    )
    run = await _start(repo, flow)
    executor = FlowExecutor(repo, http=mock_http(never_answers), config=config)

    started = time.monotonic()
    response = await executor.execute(run.id)
    elapsed = time.monotonic() - started

    assert response.status == "failed"
    assert "timed out after 100ms" in response.error.message
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_http_call_output_becomes_run_output(repo, config, mock_http):
    seen = []

    def handler(request):
        seen.append((request.method, str(request.url), request.headers.get("x-lead")))
        return httpx.Response(200, json={"score": 87})

    flow = Flow(
        name="Score",
        nodes=[
            NodeSpec(
                id="score",
                type="http_call",
                params={
                    "endpoint": "http://scoring.test/leads/{{entityId}}",
                    "method": "POST",
                    "headers": {"X-Lead": "{{entityId}}"},
                    "body": {"source": "{{source}}"},
                },
            ),
            NodeSpec(id="wait", type="delay"),
        ],
    )
    run = await _start(repo, flow, entity_id="7", initial_input={"source": "web"})

    response = await FlowExecutor(repo, http=mock_http(handler), config=config).execute(
        run.id
    )

    assert response.status == "success"
    assert seen == [("POST", "http://scoring.test/leads/7", "7")]
    assert response.output["status"] == 200
    assert response.output["data"] == {"score": 87}
    assert response.logs[1].output == {"waited_ms": 0}
    audit = await repo.list_audit("7")
    assert [entry.status for entry in audit] == ["OK"]
    assert audit[0].action_label == "Flow: Score"


@pytest.mark.asyncio
async def test_logs_are_persisted_while_run_is_in_flight(repo, config, mock_http):
    observed = {}

    async def handler(request):
        in_flight = await repo.get_run(run.id)
        observed["status"] = in_flight.status
        observed["logs"] = [log.node_id for log in in_flight.logs]
        return httpx.Response(204)

    flow = Flow(
        name="Observe",
        nodes=[
            NodeSpec(id="wait", type="delay"),
            NodeSpec(id="call", type="http_call", params={"url": "http://hook.test/"}),
        ],
    )
    run = await _start(repo, flow)

    await FlowExecutor(repo, http=mock_http(handler), config=config).execute(run.id)

    assert observed == {"status": "running", "logs": ["wait"]}


@pytest.mark.asyncio
async def test_tabular_reads_entity_and_contact_from_input(repo, config):
    flow = Flow(
        name="Tag lead",
        nodes=[
            NodeSpec(
                id="tag",
                type="tabular",
                params={
                    "field": "STAGE",
                    "value": "CALLED",
                    "target": "internal-store",
                    "additionalFields": [
                        {"field": "CALLED_ON", "value": "{{date}} {{time}}"},
                        {"field": "NOTE", "value": "{{note}}"},
                    ],
                },
            )
        ],
    )
    run = await _start(
        repo,
        flow,
        created_by="agent@example.com",
        initial_input={
            "leadId": 99,
            "scheduledTime": "10:30",
            "note": "",
            "contact": {"externalId": "c-99", "custom_attributes": {"lang": "en"}},
        },
    )

    response = await FlowExecutor(repo, config=config).execute(run.id)

    assert response.status == "success"
    record = await repo.get_record("99")
    assert record["STAGE"] == "CALLED"
    assert record["CALLED_ON"].endswith(" 10:30")
    assert "NOTE" not in record
    contact = await repo.get_contact("c-99")
    assert contact["custom_attributes"]["lang"] == "en"
    assert contact["custom_attributes"]["STAGE"] == "CALLED"

    audit = await repo.list_audit("99")
    # the dispatch and the run each reach their own terminal outcome
    assert [entry.status for entry in audit] == ["OK", "OK"]
    assert all(entry.acting_user == "agent@example.com" for entry in audit)


@pytest.mark.asyncio
async def test_tabular_without_entity_fails(repo, config):
    flow = Flow(
        name="No entity",
        nodes=[
            NodeSpec(
                id="tag",
                type="tabular",
                params={"field": "STAGE", "value": "X", "target": "internal-store"},
            )
        ],
    )
    run = await _start(repo, flow)

    response = await FlowExecutor(repo, config=config).execute(run.id)

    assert response.status == "failed"
    assert response.error.kind == "bad_request"
    assert "entityId is required" in response.error.message
    assert await repo.list_audit() == []


@pytest.mark.asyncio
async def test_crm_flow_uses_configured_webhook(repo, mock_http):
    def handler(request):
        return httpx.Response(200, json={"result": True})

    config = LeadflowConfig(crm=CrmConfig(webhook_url="http://crm.test/rest/crm.lead.update"))
    run = await _start(repo, _lead_flow("external-crm"))

    response = await FlowExecutor(repo, http=mock_http(handler), config=config).execute(
        run.id
    )

    assert response.status == "success"
    record = await repo.get_record("42")
    assert record["sync_status"] == "synced"
    audit = await repo.list_audit("42")
    assert [entry.status for entry in audit] == ["OK"]


class LosesLogsRepository(InMemoryRepository):
    async def update_run_logs(self, run_id, logs):
        raise RuntimeError("db connection lost")


class BrokenAuditRepository(InMemoryRepository):
    async def append_audit(self, entry):
        raise RuntimeError("audit table locked")


@pytest.mark.asyncio
async def test_repository_failure_ends_run_as_failed(config):
    repo = LosesLogsRepository()
    flow = Flow(
        name="Two waits",
        nodes=[NodeSpec(id="a", type="delay"), NodeSpec(id="b", type="delay")],
    )
    run = await _start(repo, flow, entity_id=42)

    response = await FlowExecutor(repo, config=config, sleep=_no_sleep).execute(run.id)

    assert response.status == "failed"
    assert response.error.kind == "internal_error"
    assert response.error.message == "db connection lost"
    assert [log.node_id for log in response.logs] == ["a"]
    stored = await repo.get_run(run.id)
    assert stored.status == "failed"
    assert stored.finished_at is not None
    audit = await repo.list_audit("42")
    assert [entry.status for entry in audit] == ["ERROR"]


@pytest.mark.asyncio
async def test_audit_failure_keeps_run_outcome(config):
    repo = BrokenAuditRepository()
    run = await _start(
        repo, Flow(name="One", nodes=[NodeSpec(id="a", type="delay")]), entity_id=42
    )

    response = await FlowExecutor(repo, config=config, sleep=_no_sleep).execute(run.id)

    assert response.status == "success"
    assert (await repo.get_run(run.id)).status == "success"


@pytest.mark.asyncio
async def test_zero_entity_id_is_a_real_entity(repo, config):
    flow = Flow(
        name="Zero",
        nodes=[
            NodeSpec(
                id="set",
                type="tabular",
                params={"field": "STAGE", "value": "NEW", "target": "internal-store"},
            ),
            NodeSpec(id="boom", type="teleport"),
        ],
    )
    run = await _start(repo, flow, initial_input={"entityId": 0})

    response = await FlowExecutor(repo, config=config).execute(run.id)

    assert response.status == "failed"
    assert (await repo.get_record("0"))["STAGE"] == "NEW"
    audit = await repo.list_audit("0")
    assert [entry.status for entry in audit] == ["OK", "ERROR"]


@pytest.mark.asyncio
async def test_tabular_date_prefers_scheduled_date(repo, config):
    flow = Flow(
        name="Schedule",
        nodes=[
            NodeSpec(
                id="book",
                type="tabular",
                params={
                    "field": "STAGE",
                    "value": "BOOKED",
                    "target": "internal-store",
                    "additionalFields": {"VISIT_AT": "{{date}} {{time}}"},
                },
            )
        ],
    )
    run = await _start(
        repo,
        flow,
        initial_input={"entityId": 5, "scheduledDate": "2026-11-02", "scheduledTime": "09:15"},
    )

    await FlowExecutor(repo, config=config).execute(run.id)

    assert (await repo.get_record("5"))["VISIT_AT"] == "2026-11-02 09:15"
