"""Drive a workflow locally: trigger it, then deliver continuations in-process."""

import asyncio
import logging

from durastep import ContinuationWorker, WorkflowClient, load_config, serve
from durastep.persistence import InMemoryWorkflowRepository
from durastep.transports import InMemoryTransport


async def greet(context):
    name = await context.run("lookup name", lambda: (context.request_payload or {}).get("name", "world"))
    await context.sleep("short pause", 1)
    return f"hello {name}"


async def main():
    logging.basicConfig(level=logging.INFO)
    transport = InMemoryTransport()
    repository = InMemoryWorkflowRepository()

    gateway = serve(greet, load_config(), repository=repository, transport=transport)
    worker = ContinuationWorker(transport, gateway=gateway)
    client = WorkflowClient(transport, repository)

    run_id = await client.trigger("http://localhost:8000/api/greet", body={"name": "Ada"})
    await worker.start(lifespan=3)

    run = await client.get_run(run_id)
    print(f"Run {run_id}: {run.status.value} -> {run.result}")
    await gateway.aclose()


if __name__ == "__main__":
    asyncio.run(main())
