import httpx
import pytest

from durastep.calls import CallScheduler
from durastep.exceptions import TransportError
from durastep.execute import Completed, Failed, ReplayExecutor, Suspended
from durastep.ledger import StepLedger
from durastep.persistence import CallAttempt, StepKind, WorkflowRun
from durastep.timers import DurableTimer

RUN_ID = "wfr_calls"
URL = "https://third-party.test/call/third-party"


async def invoke(workflow, repository, clock, client):
    executor = ReplayExecutor(
        workflow,
        repository,
        CallScheduler(repository, client, clock=clock),
        DurableTimer(repository, clock=clock),
        clock=clock,
    )
    await repository.create_run(WorkflowRun(run_id=RUN_ID, url="https://app.test/wf"))
    run = await repository.get_run(RUN_ID)
    ledger = await StepLedger.load(repository, RUN_ID)
    return await executor.execute(run, ledger)


def flaky_client(failures: int, counter: list):
    def handler(request: httpx.Request) -> httpx.Response:
        counter.append(request)
        if len(counter) <= failures:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, text="recovered")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_post_call_sends_json_body(repository, clock, http_client, third_party):
    async def workflow(context):
        result = await context.call(
            "post call",
            URL,
            method="POST",
            body="post-payload",
            headers={"post-header": "post-header-value-x"},
        )
        return {"status": result.status, "body": result.body}

    outcome = await invoke(workflow, repository, clock, http_client)

    assert isinstance(outcome, Completed)
    assert outcome.result == {
        "status": 201,
        "body": "called POST 'third-party-result' 'post-header-value-x' '\"post-payload\"'",
    }
    step = (await repository.get_steps(RUN_ID))[0]
    assert step.kind == StepKind.CALL
    assert step.result_status == 201


@pytest.mark.asyncio
async def test_empty_response_body_is_empty_string(repository, clock, http_client):
    async def workflow(context):
        result = await context.call("put call", URL, method="PUT", retries=0)
        return {"status": result.status, "body": result.body}

    outcome = await invoke(workflow, repository, clock, http_client)
    assert outcome.result == {"status": 300, "body": ""}


@pytest.mark.asyncio
async def test_error_status_is_terminal_and_not_retried(
    repository, clock, http_client, third_party
):
    async def workflow(context):
        result = await context.call(
            "patch call",
            URL,
            method="PATCH",
            headers={"get-header": "get-header-value-x"},
            retries=3,
        )
        return {
            "status": result.status,
            "body": result.body,
            "failing": result.header("Failing-Header"),
        }

    outcome = await invoke(workflow, repository, clock, http_client)

    assert outcome.result == {
        "status": 401,
        "body": "failing request",
        "failing": "failing-header-value",
    }
    assert third_party.count("PATCH") == 1
    assert len(await repository.list_call_attempts(RUN_ID, 0)) == 1


@pytest.mark.asyncio
async def test_transport_failure_suspends_until_retry(repository, clock):
    requests = []
    client = flaky_client(failures=1, counter=requests)

    async def workflow(context):
        result = await context.call("flaky", URL, retries=2, backoff=lambda attempt: 10)
        return result.body

    outcome = await invoke(workflow, repository, clock, client)
    assert isinstance(outcome, Suspended)
    assert outcome.delay == 10
    assert len(requests) == 1

    # Redelivered early: still waiting, nothing sent
    clock.advance(4)
    outcome = await invoke(workflow, repository, clock, client)
    assert isinstance(outcome, Suspended)
    assert outcome.delay == pytest.approx(6)
    assert len(requests) == 1

    clock.advance(6)
    outcome = await invoke(workflow, repository, clock, client)
    assert isinstance(outcome, Completed)
    assert outcome.result == "recovered"

    attempts = await repository.list_call_attempts(RUN_ID, 0)
    assert [a.attempt for a in attempts] == [1, 2]
    assert attempts[0].error and attempts[0].status is None
    assert attempts[1].status == 200


@pytest.mark.asyncio
async def test_exhausted_retries_surface_transport_error(repository, clock):
    requests = []
    client = flaky_client(failures=100, counter=requests)

    async def workflow(context):
        await context.call("down", URL, retries=1, backoff=lambda attempt: 1)

    outcome = await invoke(workflow, repository, clock, client)
    assert isinstance(outcome, Suspended)

    clock.advance(1)
    outcome = await invoke(workflow, repository, clock, client)
    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, TransportError)
    assert not outcome.retryable
    assert len(requests) == 2

    step = (await repository.get_steps(RUN_ID))[0]
    assert step.result_status is None
    assert "ConnectError" in step.error

    # Replay raises the same error without sending anything
    outcome = await invoke(workflow, repository, clock, client)
    assert isinstance(outcome.error, TransportError)
    assert len(requests) == 2


@pytest.mark.asyncio
async def test_transport_error_can_be_handled_by_workflow(repository, clock):
    client = flaky_client(failures=100, counter=[])

    async def workflow(context):
        try:
            await context.call("down", URL)
        except TransportError:
            return "fallback"

    outcome = await invoke(workflow, repository, clock, client)
    assert outcome.result == "fallback"


@pytest.mark.asyncio
async def test_persisted_response_is_promoted_without_new_request(
    repository, clock, http_client, third_party
):
    await repository.create_run(WorkflowRun(run_id=RUN_ID, url="https://app.test/wf"))
    await repository.record_call_attempt(
        CallAttempt(
            run_id=RUN_ID,
            step_index=0,
            attempt=1,
            status=202,
            headers={"x-origin": ["stored"]},
            body="already answered",
            completed_at=clock(),
        )
    )

    async def workflow(context):
        result = await context.call("once", URL, method="POST", body={"a": 1})
        return [result.status, result.body, result.header("x-origin")]

    outcome = await invoke(workflow, repository, clock, http_client)

    assert outcome.result == [202, "already answered", "stored"]
    assert third_party.requests == []
