# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Idempotent provisioning pipeline: probe, apply if absent, wait, repeat."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from rich.markup import escape

from devenv_manager import console, logger
from devenv_manager.errors import (
    ApplyFailed,
    DevEnvError,
    OperationCancelled,
    PreconditionFailed,
)
from devenv_manager.poller import ReadinessCheck, wait_until_ready
from devenv_manager.registry import ManagedResource, ResourceRegistry

# record(kind, identifier, *, namespace=None, attributes=None) -> ManagedResource
RecordFn = Callable[..., ManagedResource]


@dataclass(frozen=True)
class ProvisioningStep:
    """One named, re-runnable provisioning step.

    Attributes:
        name: Identifier, unique within a pipeline.
        probe: Returns True when the step's target state already exists.
        apply: Performs the mutation. Receives a ``record`` callable and must
            call it for every resource it creates, as soon as it exists.
        depends_on: Names of earlier steps this one needs.
        readiness: Optional factory for a ReadinessCheck awaited after the
            step, whether it was applied or skipped.
    """

    name: str
    probe: Callable[[], bool]
    apply: Callable[[RecordFn], None]
    depends_on: tuple[str, ...] = ()
    readiness: Callable[[], ReadinessCheck] | None = None


class StepOutcome(Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_RUN = "not-run"


@dataclass(frozen=True)
class StepResult:
    name: str
    outcome: StepOutcome
    error: str | None = None
    seconds: float = 0.0


@dataclass(frozen=True)
class PipelineResult:
    """Per-step outcomes of one pipeline run.

    Attributes:
        steps: One result per declared step, in declaration order.
        failed_step: Name of the step that aborted the run, or None.
        error: The error that aborted the run, or None.
    """

    steps: tuple[StepResult, ...]
    failed_step: str | None = None
    error: DevEnvError | None = None

    @property
    def ok(self) -> bool:
        return self.failed_step is None

    @property
    def applied(self) -> list[str]:
        return [s.name for s in self.steps if s.outcome is StepOutcome.APPLIED]

    @property
    def skipped(self) -> list[str]:
        return [s.name for s in self.steps if s.outcome is StepOutcome.SKIPPED]

    def outcome_of(self, name: str) -> StepOutcome:
        for step in self.steps:
            if step.name == name:
                return step.outcome
        raise KeyError(name)


def validate_steps(steps: Sequence[ProvisioningStep]) -> None:
    """Check names are unique and every dependency names an earlier step.

    Raises:
        PreconditionFailed: On a duplicate name or an unknown or later dependency.
    """
    seen: set[str] = set()
    for step in steps:
        if step.name in seen:
            raise PreconditionFailed(f"Duplicate provisioning step name '{step.name}'")
        missing = [dep for dep in step.depends_on if dep not in seen]
        if missing:
            raise PreconditionFailed(
                f"Step '{step.name}' depends on {', '.join(missing)}, which must run before it"
            )
        seen.add(step.name)


def _run_step(
    step: ProvisioningStep, registry: ResourceRegistry, cancel: threading.Event
) -> StepOutcome:
    """Probe, apply and await one step, raising DevEnvError subclasses on failure."""
    if cancel.is_set():
        raise OperationCancelled(f"Cancelled before step '{step.name}'")

    try:
        present = step.probe()
    except DevEnvError:
        raise
    except Exception as err:
        raise PreconditionFailed(f"Probe for step '{step.name}' failed: {err}") from err

    if present:
        outcome = StepOutcome.SKIPPED
        console.print(f"[green]  \u2713 {step.name}: already present, skipping[/green]")
    else:
        console.print(f"[yellow]\u2139\ufe0f  {step.name}: applying...[/yellow]")
        try:
            step.apply(registry.record)
        except DevEnvError:
            raise
        except Exception as err:
            raise ApplyFailed(step.name, str(err)) from err
        outcome = StepOutcome.APPLIED

    if step.readiness is not None:
        try:
            check = step.readiness()
            console.print(f"[yellow]   Waiting for {check.description}...[/yellow]")
            wait_until_ready(check, cancel)
        except DevEnvError:
            raise
        except Exception as err:
            raise ApplyFailed(step.name, f"readiness check failed: {err}") from err

    if outcome is StepOutcome.APPLIED:
        console.print(f"[green]\u2705 {step.name}: done[/green]")
    return outcome


def run_pipeline(
    steps: Sequence[ProvisioningStep],
    registry: ResourceRegistry,
    cancel: threading.Event | None = None,
) -> PipelineResult:
    """Run *steps* strictly in order, stopping at the first failure.

    A step whose probe reports its target state present is skipped, so a
    second run over unchanged state skips everything and records nothing new.

    Args:
        steps: Steps in execution order.
        registry: Registry receiving every created resource.
        cancel: Event that aborts the run and any in-progress wait.

    Returns:
        A PipelineResult. Steps after a failure are reported NOT_RUN.

    Raises:
        PreconditionFailed: If the step list itself is invalid.
    """
    validate_steps(steps)
    cancel = cancel or threading.Event()

    results: list[StepResult] = []
    for index, step in enumerate(steps):
        started = time.monotonic()
        try:
            outcome = _run_step(step, registry, cancel)
        except DevEnvError as err:
            elapsed = time.monotonic() - started
            logger.debug("Step %s failed after %.1fs: %s", step.name, elapsed, err)
            console.print(f"[red]\u274c {step.name}: {escape(str(err))}[/red]")
            results.append(StepResult(step.name, StepOutcome.FAILED, str(err), elapsed))
            results.extend(StepResult(s.name, StepOutcome.NOT_RUN) for s in steps[index + 1:])
            return PipelineResult(tuple(results), failed_step=step.name, error=err)
        results.append(StepResult(step.name, outcome, seconds=time.monotonic() - started))

    return PipelineResult(tuple(results))
