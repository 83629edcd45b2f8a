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

"""Tests for the concrete provisioning steps against in-memory collaborators."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from devenv_manager.components import (
    MANAGED_LABELS,
    application_steps,
    argocd_admin_password,
    gitops_steps,
    gitlab_root_password,
    hostless_ingress,
    infrastructure_steps,
    rollout_check,
)
from devenv_manager.config import ActionFlags
from devenv_manager.constants import dep_value
from devenv_manager.errors import PreconditionFailed
from devenv_manager.pipeline import StepOutcome, run_pipeline
from devenv_manager.poller import ReadinessState
from devenv_manager.registry import ResourceKind
from devenv_manager.runtime import RolloutStatus

ARGOCD_MANIFEST = dep_value("argocd", "install_manifest")


def _flags(**overrides) -> ActionFlags:
    values = dict(profile="basic", create_cluster=True, build_image=False, pause_before_app=False, start_forwards=False)
    values.update(overrides)
    return ActionFlags(**values)


@pytest.fixture
def argocd_installs(runtime):
    runtime.on_apply[ARGOCD_MANIFEST] = lambda: runtime.deployments.add(("argocd-server", "argocd"))
    return runtime


class TestBasicInfrastructure:
    """Tests for the basic profile infrastructure pipeline."""

    def test_fresh_run_creates_everything(self, session, argocd_installs) -> None:
        """Should create the cluster, namespaces and Argo CD, recording each."""
        result = run_pipeline(infrastructure_steps(session, _flags()), session.registry)

        assert result.ok, result.error
        kinds = [(r.kind, r.identifier) for r in session.registry.snapshot()]
        assert kinds == [
            (ResourceKind.CLUSTER, "test-cluster"),
            (ResourceKind.NAMESPACE, "argocd"),
            (ResourceKind.NAMESPACE, "dev"),
            (ResourceKind.MANIFEST, ARGOCD_MANIFEST),
        ]
        assert session.runtime.kubeconfig == session.kubeconfig_path
        assert session.runtime.namespace_labels["dev"] == MANAGED_LABELS

    def test_rerun_is_a_no_op(self, session, argocd_installs) -> None:
        """Should skip every step and record nothing new on a second run."""
        steps = infrastructure_steps(session, _flags())
        run_pipeline(steps, session.registry)
        calls_before = list(session.runtime.calls)

        result = run_pipeline(infrastructure_steps(session, _flags()), session.registry)

        assert result.applied == []
        assert len(session.registry) == 4
        assert session.runtime.calls == calls_before

    def test_skip_cluster_creation_fails_on_missing_cluster(self, session) -> None:
        """Should stop at the cluster step instead of creating one."""
        result = run_pipeline(infrastructure_steps(session, _flags(create_cluster=False)), session.registry)

        assert result.failed_step == "cluster"
        assert isinstance(result.error, PreconditionFailed)
        assert len(session.registry) == 0

    def test_unreachable_cluster_fails_kubeconfig_step(self, session) -> None:
        """Should fail when the written kubeconfig cannot reach the API server."""
        session.runtime.reachable = False

        result = run_pipeline(infrastructure_steps(session, _flags()), session.registry)

        assert result.failed_step == "kubeconfig"
        assert result.outcome_of("cluster") is StepOutcome.APPLIED

    def test_argocd_pod_not_running_times_out(self, session, argocd_installs) -> None:
        """Should wait for the argocd-server pod and fail when it never runs."""
        session.runtime.pod_phases[("app.kubernetes.io/name=argocd-server", "argocd")] = "Pending"

        result = run_pipeline(infrastructure_steps(session, _flags()), session.registry)

        assert result.failed_step == "argocd"
        assert session.registry.get(ResourceKind.MANIFEST, ARGOCD_MANIFEST, "argocd") is not None


class TestGitOpsInfrastructure:
    """Tests for the gitops profile steps."""

    def test_installs_charts_and_hostless_ingresses(self, session) -> None:
        """Should install the three releases and both ingresses."""
        result = run_pipeline(infrastructure_steps(session, _flags(profile="gitops")), session.registry)

        assert result.ok, result.error
        releases = {r.identifier for r in session.registry if r.kind is ResourceKind.NAMESPACE_SCOPED_RELEASE}
        assert releases == {
            dep_value("ingress_nginx", "release"),
            dep_value("gitlab", "release"),
            dep_value("argocd", "release"),
        }
        ingresses = {r.identifier for r in session.registry if r.kind is ResourceKind.INGRESS_OBJECT}
        assert ingresses == {"gitlab-hostless", "argocd-hostless"}
        assert (session.state_dir / "gitlab-overrides.yaml").exists()

    def test_failed_rollout_stops_pipeline(self, session) -> None:
        """Should fail fast when a release's rollout exceeds its deadline."""
        deployment = dep_value("ingress_nginx", "controller_deployment")
        session.runtime.rollouts[(deployment, "ingress-nginx")] = RolloutStatus.FAILED

        result = run_pipeline(infrastructure_steps(session, _flags(profile="gitops")), session.registry)

        assert result.failed_step == f"release/{dep_value('ingress_nginx', 'release')}"
        assert result.outcome_of(f"release/{dep_value('gitlab', 'release')}") is StepOutcome.NOT_RUN

    def test_missing_application_manifest_is_skipped(self, session, tmp_path: Path) -> None:
        """Should leave out the Argo CD Application step when its file is absent."""
        gitops = session.cfg.gitops.model_copy(update={"argocd_application": tmp_path / "nope.yaml"})
        session.cfg = dataclasses.replace(session.cfg, gitops=gitops)

        names = [step.name for step in gitops_steps(session)]

        assert "argocd-application" not in names


class TestApplication:
    """Tests for the application phase."""

    def test_applies_manifest_and_waits_for_service(self, session, manifest_file: Path) -> None:
        """Should apply the manifest and wait until the Service exists."""
        session.runtime.on_apply[str(manifest_file)] = lambda: session.runtime.services.add(("app", "dev"))

        result = run_pipeline(application_steps(session, _flags()), session.registry)

        assert result.ok, result.error
        resource = session.registry.snapshot()[0]
        assert resource.kind is ResourceKind.MANIFEST
        assert resource.attributes["source"] == str(manifest_file.resolve())

    def test_missing_manifest_is_precondition_failure(self, session, tmp_path: Path) -> None:
        """Should fail without applying anything when the file is missing."""
        app = session.cfg.app.model_copy(update={"app_manifest": tmp_path / "missing.yaml"})
        session.cfg = dataclasses.replace(session.cfg, app=app)

        result = run_pipeline(application_steps(session, _flags()), session.registry)

        assert isinstance(result.error, PreconditionFailed)
        assert "missing.yaml" in str(result.error)
        assert session.runtime.calls == []

    def test_build_image_builds_and_imports(self, session, manifest_file: Path, tmp_path: Path) -> None:
        """Should build the labelled image, import it and record it."""
        session.runtime.services.add(("app", "dev"))
        app = session.cfg.app.model_copy(update={"app_build_context": tmp_path})
        session.cfg = dataclasses.replace(session.cfg, app=app)

        result = run_pipeline(application_steps(session, _flags(build_image=True)), session.registry)

        assert result.ok, result.error
        context, tag, labels = session.containers.built[0]
        assert (context, tag) == (tmp_path, app.app_image)
        assert labels == {"devenv-manager.cluster": "test-cluster"}
        assert ("import_image", "test-cluster", app.app_image) in session.runtime.calls
        assert session.registry.get(ResourceKind.CONTAINER_IMAGE, app.app_image) is not None


class TestHelpers:
    """Tests for readiness checks, ingress builder and credentials."""

    def test_rollout_progressing_is_not_yet(self, session) -> None:
        """Should keep waiting while a rollout progresses."""
        session.runtime.rollouts[("web", "ns")] = RolloutStatus.PROGRESSING

        assert rollout_check(session, "web", "ns").predicate() is ReadinessState.NOT_YET

    def test_hostless_ingress_has_no_host(self) -> None:
        """Should build a rule that matches any Host header."""
        ingress = hostless_ingress("web", "ns", "/", "svc", 80, {})

        rule = ingress["spec"]["rules"][0]
        assert "host" not in rule
        assert rule["http"]["paths"][0]["backend"]["service"] == {"name": "svc", "port": {"number": 80}}
        assert ingress["metadata"]["labels"] == MANAGED_LABELS

    def test_argocd_password_read_from_secret(self, session) -> None:
        """Should return the decoded initial admin password."""
        session.runtime.secrets[("argocd-initial-admin-secret", "argocd", "password")] = "s3cret"

        assert argocd_admin_password(session) == "s3cret"

    def test_gitlab_password_polled_until_present(self, session) -> None:
        """Should locate the GitLab root password secret by suffix."""
        session.runtime.secrets[("gitlab-gitlab-initial-root-password", "gitlab", "password")] = "root-pw"

        assert gitlab_root_password(session) == "root-pw"
