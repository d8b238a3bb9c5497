from datetime import datetime, timezone

import pytest

from durastep.exceptions import DuplicateStepError
from durastep.ledger import StepLedger, fingerprint
from durastep.persistence import StepKind, StepRecord


def record(index, run_id="wfr_1"):
    return StepRecord(
        run_id=run_id,
        index=index,
        kind=StepKind.GENERIC,
        name=f"step {index}",
        input_fingerprint=fingerprint(StepKind.GENERIC, f"step {index}"),
        result_body="null",
        completed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def test_fingerprint_is_stable_and_input_sensitive():
    a = fingerprint(StepKind.CALL, "post", {"url": "https://a.test", "headers": {"b": 1, "a": 2}})
    b = fingerprint(StepKind.CALL, "post", {"headers": {"a": 2, "b": 1}, "url": "https://a.test"})
    assert a == b
    assert len(a) == 64
    assert a != fingerprint(StepKind.CALL, "post", {"url": "https://b.test"})
    assert a != fingerprint(StepKind.GENERIC, "post", {"url": "https://a.test", "headers": {"b": 1, "a": 2}})
    assert fingerprint(StepKind.SLEEP, "nap", {"seconds": 2.0}) != fingerprint(
        StepKind.SLEEP, "nap", {"seconds": 3.0}
    )


@pytest.mark.asyncio
async def test_ledger_appends_in_order(repository):
    ledger = await StepLedger.load(repository, "wfr_1")
    assert len(ledger) == 0

    await ledger.append(record(0))
    await ledger.append(record(1))
    assert ledger.next_index == 2
    assert ledger.get(1).name == "step 1"
    assert ledger.get(2) is None

    reloaded = await StepLedger.load(repository, "wfr_1")
    assert [r.index for r in reloaded.records] == [0, 1]


@pytest.mark.asyncio
async def test_ledger_rejects_gaps_and_foreign_records(repository):
    ledger = await StepLedger.load(repository, "wfr_1")

    with pytest.raises(ValueError):
        await ledger.append(record(1))
    with pytest.raises(ValueError):
        await ledger.append(record(0, run_id="wfr_other"))
    assert await repository.get_steps("wfr_1") == []


@pytest.mark.asyncio
async def test_ledger_reappend_identical_record_is_noop(repository):
    ledger = await StepLedger.load(repository, "wfr_1")
    stored = await ledger.append(record(0))

    again = await ledger.append(
        record(0).model_copy(update={"completed_at": datetime(2024, 6, 1, tzinfo=timezone.utc)})
    )

    assert again == stored
    assert len(ledger) == 1
    assert len(await repository.get_steps("wfr_1")) == 1


@pytest.mark.asyncio
async def test_ledger_reappend_conflicting_record_raises(repository):
    ledger = await StepLedger.load(repository, "wfr_1")
    await ledger.append(record(0))

    with pytest.raises(DuplicateStepError) as exc_info:
        await ledger.append(record(0).model_copy(update={"result_body": '"changed"'}))

    assert exc_info.value.index == 0
    assert ledger.get(0).result_body == "null"
