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

"""Tests for the k3d/kubectl/helm wrapper, driven through its ``_run`` seam."""

from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest
import sh

from devenv_manager.runtime import ClusterRuntime, RolloutStatus, is_not_found


def _not_found(what: str) -> sh.ErrorReturnCode:
    return sh.ErrorReturnCode_1(f"kubectl get {what}", b"", f'Error from server (NotFound): {what} not found'.encode())


class ScriptedRuntime(ClusterRuntime):
    """ClusterRuntime whose commands return canned output."""

    def __init__(self, responses: dict[tuple, object], kubeconfig: Path | None = None) -> None:
        super().__init__(kubeconfig)
        self.responses = responses
        self.commands: list[tuple] = []

    def _run(self, tool, *args, **kwargs):
        command = (tool, *[str(a) for a in args])
        self.commands.append(command)
        response = self.responses.get(command, "")
        if isinstance(response, Exception):
            raise response
        return response


class TestQueries:
    """Tests for existence and status queries."""

    def test_cluster_exists_parses_k3d_json(self) -> None:
        """Should find the cluster by name in k3d's JSON listing."""
        runtime = ScriptedRuntime({
            ("k3d", "cluster", "list", "-o", "json"): json.dumps([{"name": "dev"}, {"name": "other"}]),
        })

        assert runtime.cluster_exists("dev") is True
        assert runtime.cluster_exists("missing") is False

    def test_not_found_means_absent(self) -> None:
        """Should map a NotFound error to False."""
        runtime = ScriptedRuntime({("kubectl", "get", "namespace", "dev"): _not_found("namespaces")})

        assert runtime.namespace_exists("dev") is False

    def test_other_errors_propagate(self) -> None:
        """Should not hide errors other than NotFound."""
        error = sh.ErrorReturnCode_1("kubectl get namespace dev", b"", b"Unable to connect to the server")
        runtime = ScriptedRuntime({("kubectl", "get", "namespace", "dev"): error})

        with pytest.raises(sh.ErrorReturnCode):
            runtime.namespace_exists("dev")

    @pytest.mark.parametrize(
        ("deployment", "expected"),
        [
            (
                {"metadata": {"generation": 2}, "spec": {"replicas": 2},
                 "status": {"observedGeneration": 2, "updatedReplicas": 2, "availableReplicas": 2}},
                RolloutStatus.COMPLETE,
            ),
            (
                {"metadata": {"generation": 2}, "spec": {"replicas": 2},
                 "status": {"observedGeneration": 2, "updatedReplicas": 1, "availableReplicas": 1}},
                RolloutStatus.PROGRESSING,
            ),
            (
                {"metadata": {"generation": 1}, "spec": {"replicas": 1},
                 "status": {"conditions": [{"type": "Progressing", "reason": "ProgressDeadlineExceeded"}]}},
                RolloutStatus.FAILED,
            ),
        ],
    )
    def test_rollout_status(self, deployment: dict, expected: RolloutStatus) -> None:
        """Should classify a deployment's rollout from its status."""
        runtime = ScriptedRuntime({
            ("kubectl", "get", "deployment", "web", "-n", "ns", "-o", "json"): json.dumps(deployment),
        })

        assert runtime.rollout_status("web", "ns") is expected

    def test_rollout_missing_deployment(self) -> None:
        """Should report MISSING when the deployment does not exist yet."""
        runtime = ScriptedRuntime({
            ("kubectl", "get", "deployment", "web", "-n", "ns", "-o", "json"): _not_found("deployments"),
        })

        assert runtime.rollout_status("web", "ns") is RolloutStatus.MISSING

    def test_read_secret_field_decodes_base64(self) -> None:
        """Should return the decoded Secret value."""
        encoded = base64.b64encode(b"hunter2").decode()
        runtime = ScriptedRuntime({
            ("kubectl", "get", "secret", "admin", "-n", "argocd", "-o", "json"): json.dumps(
                {"data": {"password": encoded}}
            ),
        })

        assert runtime.read_secret_field("admin", "argocd", "password") == "hunter2"

    def test_find_secret_by_suffix(self) -> None:
        """Should return the bare name of the first matching Secret."""
        runtime = ScriptedRuntime({
            ("kubectl", "get", "secrets", "-n", "gitlab", "-o", "name"):
                "secret/gitlab-redis\nsecret/gitlab-gitlab-initial-root-password\n",
        })

        assert runtime.find_secret("gitlab", "initial-root-password") == "gitlab-gitlab-initial-root-password"

    def test_helm_repos_empty_when_helm_fails(self) -> None:
        """Should treat helm's non-zero exit without repositories as empty."""
        error = sh.ErrorReturnCode_1("helm repo list", b"", b"Error: no repositories to show")
        runtime = ScriptedRuntime({("helm", "repo", "list", "-o", "json"): error})

        assert runtime.helm_repos() == []


class TestMutations:
    """Tests for the commands mutating wrappers issue."""

    def test_release_install_arguments(self) -> None:
        """Should run helm upgrade --install with version, values and sets."""
        runtime = ScriptedRuntime({})

        runtime.install_or_upgrade_release(
            "argocd", "argo/argo-cd", "argocd",
            values_files=(Path("v.yaml"),), set_values=("installCRDs=true",), version="5.0.0",
        )

        assert runtime.commands == [(
            "helm", "upgrade", "--install", "argocd", "argo/argo-cd", "-n", "argocd",
            "--version", "5.0.0", "-f", "v.yaml", "--set", "installCRDs=true",
        )]

    def test_write_kubeconfig_switches_environment(self, tmp_path: Path) -> None:
        """Should point KUBECONFIG at the written file for later commands."""
        runtime = ScriptedRuntime({})
        output = tmp_path / "kubeconfig.yaml"
        output.write_text("apiVersion: v1\n")

        runtime.write_kubeconfig("dev", output)

        assert runtime.env["KUBECONFIG"] == str(output)
        assert ("k3d", "kubeconfig", "write", "dev", "--output", str(output), "--overwrite") in runtime.commands

    def test_create_cluster_passes_settings(self, tmp_path: Path) -> None:
        """Should create the cluster from individual settings when no config file exists."""
        runtime = ScriptedRuntime({("k3d", "cluster", "list", "-o", "json"): "[]"})

        runtime.create_cluster("dev", config_file=tmp_path / "absent.yaml", agents=2, api_port=6550,
                               lb_port="8081:80", max_retries=1)

        create = [c for c in runtime.commands if c[:3] == ("k3d", "cluster", "create")]
        assert len(create) == 1
        assert "--agents" in create[0] and "2" in create[0]
        assert "--kubeconfig-update-default=false" in create[0]


def test_is_not_found_matches_kubectl_and_helm_messages() -> None:
    """Should recognise both kubectl and helm not-found wording."""
    assert is_not_found(_not_found("pods"))
    assert is_not_found(sh.ErrorReturnCode_1("helm status x", b"", b"Error: release: not found"))
    assert not is_not_found(sh.ErrorReturnCode_1("kubectl get x", b"", b"forbidden"))
