"""Simple example showing a flow run against the internal store."""

import asyncio

from leadflow import Flow, FlowExecutor, NodeSpec, create_run, get_repository


async def main():
    """Basic flow execution example."""
    # Uses LEADFLOW_DATABASE_URL when set, in-memory otherwise
    repository = get_repository()

    # Define the flow
    flow = Flow(
        name="Qualify lead",
        nodes=[
            NodeSpec(id="wait", type="delay", params={"ms": 10}),
            NodeSpec(
                id="set_status",
                type="tabular",
                params={"field": "STATUS", "value": "NEW", "target": "internal-store"},
            ),
        ],
    )
    await repository.save_flow(flow)

    # Create and execute a run
    run = await create_run(repository, flow.id, entity_id=42, created_by="guide")
    response = await FlowExecutor(repository).execute(run.id)

    print(f"✅ Run {run.id} finished: {response.status}")
    for log in response.logs:
        print(f"🔗 {log.node_id} ({log.type}): {log.status}")
    print(f"📋 Record: {await repository.get_record('42')}")
    print(f"📋 Audit: {[e.status for e in await repository.list_audit('42')]}")


if __name__ == "__main__":
    asyncio.run(main())
