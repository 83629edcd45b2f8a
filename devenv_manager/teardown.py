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

"""Dependency-ordered, best-effort teardown of managed resources."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from rich.markup import escape
from rich.table import Table

from devenv_manager import console, logger
from devenv_manager.errors import RemovalFailed
from devenv_manager.registry import ManagedResource, ResourceKind, ResourceRegistry

# Tunnels stop before what they point at; the cluster always goes last.
TEARDOWN_ORDER: tuple[ResourceKind, ...] = (
    ResourceKind.LOCAL_PROCESS,
    ResourceKind.MANIFEST,
    ResourceKind.INGRESS_OBJECT,
    ResourceKind.NAMESPACE_SCOPED_RELEASE,
    ResourceKind.NAMESPACE,
    ResourceKind.CONTAINER,
    ResourceKind.CONTAINER_IMAGE,
    ResourceKind.CONTAINER_VOLUME,
    ResourceKind.CONTAINER_NETWORK,
    ResourceKind.CLUSTER,
)
_RANK = {kind: rank for rank, kind in enumerate(TEARDOWN_ORDER)}


class RemovalOutcome(Enum):
    REMOVED = "removed"
    ALREADY_ABSENT = "already-absent"
    FAILED = "failed"


# A remover returns REMOVED or ALREADY_ABSENT and raises RemovalFailed otherwise.
Remover = Callable[[ManagedResource], RemovalOutcome]


@dataclass(frozen=True)
class ResourceReport:
    resource: ManagedResource
    outcome: RemovalOutcome
    reason: str | None = None


@dataclass
class TeardownReport:
    """Outcome of a teardown run.

    Attributes:
        entries: One report per attempted resource, in the order attempted.
        retained: Cluster resources left in place because destroying the
            cluster was not requested.
        discovered: True when the input came from discovery rather than
            the session registry.
    """

    entries: list[ResourceReport] = field(default_factory=list)
    retained: list[ManagedResource] = field(default_factory=list)
    discovered: bool = False

    @property
    def failures(self) -> list[ResourceReport]:
        return [e for e in self.entries if e.outcome is RemovalOutcome.FAILED]

    @property
    def cluster_entries(self) -> list[ResourceReport]:
        return [e for e in self.entries if e.resource.kind is ResourceKind.CLUSTER]

    @property
    def cluster_failed(self) -> bool:
        return any(e.outcome is RemovalOutcome.FAILED for e in self.cluster_entries)

    def count(self, outcome: RemovalOutcome) -> int:
        return sum(1 for e in self.entries if e.outcome is outcome)


def order_resources(resources: Iterable[ManagedResource]) -> list[ManagedResource]:
    """Sort by kind in TEARDOWN_ORDER, then newest first within a kind."""
    return sorted(resources, key=lambda r: (_RANK[r.kind], -r.creation_order))


def _remove_one(resource: ManagedResource, removers: Mapping[ResourceKind, Remover]) -> ResourceReport:
    remover = removers.get(resource.kind)
    if remover is None:
        return ResourceReport(resource, RemovalOutcome.FAILED, f"no removal operation for {resource.kind.value}")
    try:
        outcome = remover(resource)
    except RemovalFailed as err:
        return ResourceReport(resource, RemovalOutcome.FAILED, str(err))
    except Exception as err:
        logger.debug("Unexpected error removing %s", resource.describe(), exc_info=True)
        return ResourceReport(resource, RemovalOutcome.FAILED, f"{type(err).__name__}: {err}")
    if outcome is RemovalOutcome.FAILED:
        return ResourceReport(resource, outcome, "remover reported failure")
    return ResourceReport(resource, outcome)


def teardown(
    resources: Iterable[ManagedResource],
    removers: Mapping[ResourceKind, Remover],
    *,
    destroy_cluster: bool = False,
    registry: ResourceRegistry | None = None,
    discovered: bool = False,
) -> TeardownReport:
    """Attempt removal of every resource, never stopping early.

    Args:
        resources: Resources to remove, in any order.
        removers: Removal operation per resource kind.
        destroy_cluster: Whether cluster resources are removed. When False
            they are reported as retained.
        registry: Registry to prune of removed and already-absent resources.
        discovered: Marks the report as built from discovery.

    Returns:
        A TeardownReport with exactly one entry per attempted resource.
    """
    report = TeardownReport(discovered=discovered)
    for resource in order_resources(resources):
        if resource.kind is ResourceKind.CLUSTER and not destroy_cluster:
            report.retained.append(resource)
            continue

        entry = _remove_one(resource, removers)
        report.entries.append(entry)
        if entry.outcome is RemovalOutcome.FAILED:
            style = "bold red" if resource.kind is ResourceKind.CLUSTER else "red"
            console.print(f"[{style}]\u2717 {resource.describe()}: {escape(entry.reason or '')}[/{style}]")
        else:
            console.print(f"[green]\u2713 {resource.describe()} ({entry.outcome.value})[/green]")
            if registry is not None:
                registry.remove(resource)
    return report


def render_report(report: TeardownReport) -> Table:
    """Build the summary table printed at the end of ``teardown``."""
    title = "Teardown summary (discovered resources)" if report.discovered else "Teardown summary"
    table = Table(title=title)
    table.add_column("Kind", style="cyan")
    table.add_column("Resource")
    table.add_column("Outcome")
    table.add_column("Reason", style="dim")
    colours = {
        RemovalOutcome.REMOVED: "green",
        RemovalOutcome.ALREADY_ABSENT: "yellow",
        RemovalOutcome.FAILED: "red",
    }
    for entry in report.entries:
        target = entry.resource.identifier
        if entry.resource.namespace:
            target = f"{entry.resource.namespace}/{target}"
        colour = colours[entry.outcome]
        table.add_row(
            entry.resource.kind.value, target, f"[{colour}]{entry.outcome.value}[/{colour}]", escape(entry.reason or "")
        )
    for resource in report.retained:
        table.add_row(resource.kind.value, resource.identifier, "[blue]retained[/blue]", "cluster kept")
    return table
