"""End-to-end run of the call/sleep scenario through client, broker and worker."""

import pytest

from durastep.calls import CallScheduler
from durastep.client import WorkflowClient
from durastep.contracts import InvocationMessage
from durastep.gateway import InvocationGateway
from durastep.persistence import RunStatus, StepKind
from durastep.worker import ContinuationWorker

THIRD_PARTY = "https://third-party.test/call/third-party"
TOPIC = "continuations"


async def call_workflow(context):
    payload = context.request_payload
    assert context.headers.get("test-header-foo") == "header-foo"

    post = await context.call(
        "post call",
        THIRD_PARTY,
        method="POST",
        body="post-payload",
        headers={"post-header": "post-header-value-x"},
    )
    assert payload == "my-payload"
    assert post.status == 201
    assert post.body == "called POST 'third-party-result' 'post-header-value-x' '\"post-payload\"'"

    await context.sleep("sleep 1", 2)

    get = await context.call(
        "get call", THIRD_PARTY, headers={"get-header": "get-header-value-x"}
    )
    assert get.status == 200
    assert get.headers["get-header"][0] == "get-header-value-x"
    assert get.body == "called GET 'third-party-result' 'get-header-value-x'"

    patch = await context.call(
        "patch call",
        THIRD_PARTY,
        method="PATCH",
        headers={"get-header": "get-header-value-x"},
        retries=1,
    )
    assert patch.status == 401
    assert patch.body == "failing request"
    assert patch.headers["failing-header"][0] == "failing-header-value"

    put = await context.call("put call", THIRD_PARTY, method="PUT", retries=0)
    assert put.status == 300
    assert put.body == ""

    return get.body


async def run_until_idle(transport, worker, clock, limit=20):
    """Deliver due messages, jumping the clock to the next one when idle."""
    responses = []
    for _ in range(limit):
        item = await transport.pop_due(TOPIC)
        if item is None:
            pending = transport.pending(TOPIC)
            if not pending:
                return responses
            clock.now = max(clock.now, min(m.not_before for m in pending))
            continue
        responses.append(await worker.deliver(item[1]))
    raise AssertionError("workflow did not settle")


@pytest.mark.asyncio
async def test_call_and_sleep_scenario(repository, transport, clock, http_client, third_party):
    gateway = InvocationGateway(
        call_workflow,
        repository=repository,
        transport=transport,
        call_scheduler=CallScheduler(repository, http_client, clock=clock),
        retries=0,
        clock=clock,
    )
    worker = ContinuationWorker(transport, gateway=gateway, clock=clock)
    client = WorkflowClient(transport, repository, clock=clock)

    run_id = await client.trigger(
        "https://app.test/api/workflow",
        body="my-payload",
        headers={"test-header-foo": "header-foo"},
    )
    responses = await run_until_idle(transport, worker, clock)

    run = await client.get_run(run_id)
    assert run.status == RunStatus.COMPLETED, run.error
    assert responses[-1].data() == {
        "workflowRunId": run_id,
        "result": "called GET 'third-party-result' 'get-header-value-x'",
    }
    assert [s.kind for s in run.steps] == [
        StepKind.CALL,
        StepKind.SLEEP,
        StepKind.CALL,
        StepKind.CALL,
        StepKind.CALL,
    ]
    assert [s.index for s in run.steps] == [0, 1, 2, 3, 4]
    assert {m: third_party.count(m) for m in ("POST", "GET", "PATCH", "PUT")} == {
        "POST": 1,
        "GET": 1,
        "PATCH": 1,
        "PUT": 1,
    }

    sleep_step = run.steps[1]
    timer = await repository.get_timer(run_id, 1)
    assert (timer.fired_at - sleep_step.completed_at).total_seconds() >= 2

    # A duplicated delivery after completion is answered from the cache
    replayed = InvocationMessage(run_id=run_id, url=run.url, body="my-payload")
    duplicate = await gateway.handle(worker.build_request(replayed))
    assert duplicate.body == responses[-1].body
    assert len(third_party.requests) == 4
