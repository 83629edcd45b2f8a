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

"""Unit tests for the dependency-ordered teardown engine."""

from __future__ import annotations

from devenv_manager.errors import RemovalFailed
from devenv_manager.registry import ManagedResource, ResourceKind, ResourceRegistry
from devenv_manager.teardown import (
    TEARDOWN_ORDER,
    RemovalOutcome,
    order_resources,
    render_report,
    teardown,
)


def _recording_removers(calls: list[str], failing: set[str] = frozenset()):
    def _remove(resource: ManagedResource) -> RemovalOutcome:
        calls.append(resource.identifier)
        if resource.identifier in failing:
            raise RemovalFailed(f"{resource.identifier} is stuck")
        return RemovalOutcome.REMOVED

    return {kind: _remove for kind in ResourceKind}


def _populated_registry() -> ResourceRegistry:
    registry = ResourceRegistry()
    registry.record(ResourceKind.CLUSTER, "dev")
    registry.record(ResourceKind.NAMESPACE, "argocd")
    registry.record(ResourceKind.NAMESPACE, "app")
    registry.record(ResourceKind.MANIFEST, "install.yaml", namespace="argocd")
    registry.record(ResourceKind.LOCAL_PROCESS, "argocd-forward")
    return registry


class TestOrdering:
    """Tests for order_resources()."""

    def test_kinds_follow_teardown_order(self) -> None:
        """Should remove tunnels first and the cluster last."""
        ordered = order_resources(_populated_registry().snapshot())

        assert [r.identifier for r in ordered] == ["argocd-forward", "install.yaml", "app", "argocd", "dev"]

    def test_reverse_creation_within_kind(self) -> None:
        """Should remove the newest resource of a kind first."""
        registry = ResourceRegistry()
        for name in ("c1", "c2", "c3"):
            registry.record(ResourceKind.CONTAINER, name)

        assert [r.identifier for r in order_resources(registry.snapshot())] == ["c3", "c2", "c1"]

    def test_order_covers_every_kind_once(self) -> None:
        """Should rank every resource kind exactly once, cluster last."""
        assert set(TEARDOWN_ORDER) == set(ResourceKind)
        assert len(TEARDOWN_ORDER) == len(ResourceKind)
        assert TEARDOWN_ORDER[0] is ResourceKind.LOCAL_PROCESS
        assert TEARDOWN_ORDER[-1] is ResourceKind.CLUSTER


class TestTeardown:
    """Tests for teardown()."""

    def test_attempts_everything_despite_failure(self) -> None:
        """Should report every resource even when one removal fails."""
        registry = _populated_registry()
        calls: list[str] = []

        report = teardown(
            registry.snapshot(),
            _recording_removers(calls, failing={"app"}),
            destroy_cluster=True,
            registry=registry,
        )

        assert len(report.entries) == 5
        assert calls == ["argocd-forward", "install.yaml", "app", "argocd", "dev"]
        assert [f.resource.identifier for f in report.failures] == ["app"]
        assert report.failures[0].reason == "app is stuck"
        assert report.count(RemovalOutcome.REMOVED) == 4
        assert [r.identifier for r in registry.snapshot()] == ["app"]

    def test_cluster_retained_unless_requested(self) -> None:
        """Should leave the cluster alone without destroy_cluster."""
        registry = _populated_registry()
        calls: list[str] = []

        report = teardown(registry.snapshot(), _recording_removers(calls), registry=registry)

        assert "dev" not in calls
        assert [r.identifier for r in report.retained] == ["dev"]
        assert report.cluster_entries == []
        assert registry.get(ResourceKind.CLUSTER, "dev") is not None

    def test_cluster_failure_is_flagged(self) -> None:
        """Should expose a failed cluster removal."""
        calls: list[str] = []

        report = teardown(
            _populated_registry().snapshot(),
            _recording_removers(calls, failing={"dev"}),
            destroy_cluster=True,
        )

        assert report.cluster_failed
        assert len(report.failures) == 1

    def test_unexpected_exception_becomes_failed_entry(self) -> None:
        """Should record a collaborator crash instead of propagating it."""

        def _crash(resource: ManagedResource) -> RemovalOutcome:
            raise ConnectionError("docker daemon gone")

        resource = ManagedResource(ResourceKind.CONTAINER, "c1", 1)
        report = teardown([resource], {ResourceKind.CONTAINER: _crash})

        assert report.entries[0].outcome is RemovalOutcome.FAILED
        assert report.entries[0].reason == "ConnectionError: docker daemon gone"

    def test_missing_remover_fails_entry(self) -> None:
        """Should fail resources whose kind has no removal operation."""
        resource = ManagedResource(ResourceKind.CONTAINER_VOLUME, "v1", 1)

        report = teardown([resource], {})

        assert report.failures[0].reason == "no removal operation for container-volume"

    def test_already_absent_is_pruned_from_registry(self) -> None:
        """Should treat already-absent resources as cleaned up."""
        registry = ResourceRegistry()
        resource = registry.record(ResourceKind.NAMESPACE, "gone")

        report = teardown(
            [resource], {ResourceKind.NAMESPACE: lambda r: RemovalOutcome.ALREADY_ABSENT}, registry=registry
        )

        assert report.count(RemovalOutcome.ALREADY_ABSENT) == 1
        assert len(registry) == 0

    def test_empty_input_gives_empty_report(self) -> None:
        """Should succeed with nothing to do."""
        report = teardown([], {})

        assert report.entries == []
        assert not report.cluster_failed


class TestRenderReport:
    """Tests for the summary table."""

    def test_one_row_per_entry_and_retained_resource(self) -> None:
        """Should list attempted and retained resources."""
        registry = _populated_registry()
        report = teardown(registry.snapshot(), _recording_removers([]), discovered=True)

        table = render_report(report)

        assert table.row_count == 5
        assert "discovered" in str(table.title)
