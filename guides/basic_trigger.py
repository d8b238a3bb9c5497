"""Simple example showing how to trigger a workflow run."""

import asyncio

from durastep import WorkflowClient, get_repository, get_transport


async def main():
    """Queue the first delivery of a run; a worker picks it up."""
    transport = get_transport()
    await transport.connect()

    client = WorkflowClient(transport, get_repository())
    run_id = await client.trigger(
        "http://localhost:8000/api/onboarding",
        body={"email": "ada@example.com", "plan": "premium"},
        headers={"x-tenant": "acme"},
    )

    print(f"✅ Run triggered: {run_id}")
    print("Start a worker with: durastep worker run guides.onboarding_workflow:onboarding")

    await transport.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
