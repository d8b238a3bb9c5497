"""Utility functions to load workflows and render runs for the CLI."""

from __future__ import annotations

import sys
from importlib import import_module
from pathlib import Path
from typing import Optional

from durastep.execute import Workflow
from durastep.persistence import StepKind, StepRecord, WorkflowRun


def _load_workflow(target: str, base_path: Optional[Path] = None) -> Workflow:
    """Import ``module:attribute`` and return the workflow function."""
    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"expected 'module:workflow', got '{target}'")

    search_root = str((base_path or Path.cwd()).expanduser().resolve())
    if search_root not in sys.path:
        sys.path.insert(0, search_root)

    module = import_module(module_name)
    workflow = getattr(module, attribute, None)
    if workflow is None:
        raise ValueError(f"module '{module_name}' has no attribute '{attribute}'")
    if not callable(workflow):
        raise ValueError(f"'{target}' is not callable")
    return workflow


def _format_run_line(run: WorkflowRun) -> str:
    return f"{run.run_id}\t{run.status.value}\t{run.updated_at.isoformat()}"


def _format_step(step: StepRecord) -> str:
    line = f"- [{step.index}] {step.kind.value} '{step.name}'"
    if step.kind == StepKind.CALL:
        if step.result_status is not None:
            line += f" -> {step.result_status}"
        else:
            line += f" -> error: {step.error}"
    elif step.kind == StepKind.SLEEP and step.wake_at is not None:
        line += f" until {step.wake_at.isoformat()}"
    return line + f" ({step.completed_at.isoformat()})"
