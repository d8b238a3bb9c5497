"""Per-run view over the append-only step ledger."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Optional

from .exceptions import DuplicateStepError
from .persistence import StepKind, StepRecord, WorkflowRepository

logger = logging.getLogger(__name__)


def fingerprint(kind: StepKind, name: str, inputs: Any = None) -> str:
    """Return a stable SHA-256 digest of a step's identity and inputs."""
    canonical = json.dumps(
        {"kind": kind.value, "name": name, "inputs": inputs},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class StepLedger:
    """Records of one run, loaded once per invocation.

    Reads are served from memory; appends go straight to the repository so
    a crash after ``append`` never loses a resolved step.
    """

    def __init__(
        self, repository: WorkflowRepository, run_id: str, records: list[StepRecord]
    ) -> None:
        self._repository = repository
        self.run_id = run_id
        self._records = {r.index: r for r in records}

    @classmethod
    async def load(cls, repository: WorkflowRepository, run_id: str) -> "StepLedger":
        records = await repository.get_steps(run_id)
        return cls(repository, run_id, records)

    def get(self, index: int) -> Optional[StepRecord]:
        return self._records.get(index)

    @property
    def next_index(self) -> int:
        return len(self._records)

    @property
    def records(self) -> list[StepRecord]:
        return [self._records[i] for i in sorted(self._records)]

    def __len__(self) -> int:
        return len(self._records)

    async def append(self, record: StepRecord) -> StepRecord:
        """Persist ``record`` at the next index.

        Re-appending identical content at an existing index returns the
        stored record; different content raises ``DuplicateStepError``.
        """
        if record.run_id != self.run_id:
            raise ValueError(f"record for run {record.run_id} appended to {self.run_id}")
        existing = self._records.get(record.index)
        if existing is not None:
            if existing.same_content(record):
                return existing
            raise DuplicateStepError(record.run_id, record.index)
        if record.index != self.next_index:
            raise ValueError(
                f"run {self.run_id}: step {record.index} appended out of order "
                f"(next index is {self.next_index})"
            )
        await self._repository.append_step(record)
        self._records[record.index] = record
        logger.debug(
            f"Appended {record.kind.value} step {record.index} '{record.name}' for run_id={self.run_id}"
        )
        return record
