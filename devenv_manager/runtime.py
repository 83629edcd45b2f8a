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

"""k3d, kubectl and helm access for one session."""

from __future__ import annotations

import base64
import json
import os
from collections.abc import Sequence
from enum import Enum
from pathlib import Path
from typing import Any

import sh
import yaml
from rich.panel import Panel
from tenacity import retry, stop_after_attempt, wait_fixed

from devenv_manager import console, logger
from devenv_manager.constants import CLUSTER_CREATE_RETRY_WAIT_SECONDS, COMMAND_TIMEOUT_SECONDS


class RolloutStatus(Enum):
    MISSING = "missing"
    PROGRESSING = "progressing"
    COMPLETE = "complete"
    FAILED = "failed"


def is_not_found(err: sh.ErrorReturnCode) -> bool:
    """Return True if a failed command reported a missing object."""
    stderr = (err.stderr or b"").decode(errors="replace").lower()
    return "notfound" in stderr or "not found" in stderr


def _decode_secret(value: str) -> str | None:
    if not value:
        return None
    return base64.b64decode(value).decode()


class ClusterRuntime:
    """Thin wrapper over the k3d, kubectl and helm CLIs.

    Every kubectl and helm call runs with ``KUBECONFIG`` pointing at the
    session's own kubeconfig, so nothing depends on the operator's current
    context.

    Args:
        kubeconfig: Kubeconfig file for this session, or None to inherit
            the caller's environment until :meth:`write_kubeconfig` runs.
    """

    def __init__(self, kubeconfig: Path | None = None) -> None:
        self.kubeconfig = kubeconfig

    @property
    def env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.kubeconfig is not None:
            env["KUBECONFIG"] = str(self.kubeconfig)
        return env

    def _run(self, tool: str, *args: Any, **kwargs: Any) -> str:
        """Run *tool* with the session environment and return its stdout."""
        logger.debug("$ %s %s", tool, " ".join(str(a) for a in args))
        command = getattr(sh, tool)
        return str(command(*args, _env=self.env, **kwargs))

    def _exists(self, tool: str, *args: Any) -> bool:
        try:
            self._run(tool, *args)
        except sh.ErrorReturnCode as err:
            if is_not_found(err):
                return False
            raise
        return True

    def _get_json(self, *args: Any) -> dict | None:
        try:
            out = self._run("kubectl", "get", *args, "-o", "json")
        except sh.ErrorReturnCode as err:
            if is_not_found(err):
                return None
            raise
        return json.loads(out)

    # ========================================================================
    # Cluster lifecycle
    # ========================================================================

    def list_clusters(self) -> list[str]:
        out = self._run("k3d", "cluster", "list", "-o", "json")
        return [c.get("name") for c in json.loads(out or "[]") if c.get("name")]

    def cluster_exists(self, name: str) -> bool:
        return name in self.list_clusters()

    def create_cluster(
        self,
        name: str,
        *,
        config_file: Path | None = None,
        agents: int = 1,
        api_port: int | None = None,
        lb_port: str | None = None,
        max_retries: int = 3,
    ) -> None:
        """Create a k3d cluster with retry logic.

        A k3d config file wins over the individual flags when it exists.
        Each retry first deletes whatever a failed attempt left behind.

        Raises:
            sh.ErrorReturnCode: If the cluster cannot be created after all retries.
        """
        console.print(Panel.fit(f"Creating k3d cluster '{name}'", style="bold blue"))

        args: list[str] = ["cluster", "create", name]
        if config_file is not None and config_file.exists():
            args += ["--config", str(config_file)]
        else:
            args += ["--agents", str(agents)]
            if api_port is not None:
                args += ["--api-port", str(api_port)]
            if lb_port:
                args += ["--port", f"{lb_port}@loadbalancer"]
        args += ["--kubeconfig-update-default=false", "--wait"]

        @retry(
            stop=stop_after_attempt(max_retries),
            wait=wait_fixed(CLUSTER_CREATE_RETRY_WAIT_SECONDS),
            reraise=True,
        )
        def _attempt() -> None:
            if self.cluster_exists(name):
                self._run("k3d", "cluster", "delete", name)
                console.print("[yellow]   Removed partially created cluster[/yellow]")
            self._run("k3d", *args)

        _attempt()
        console.print(f"[green]\u2705 Cluster '{name}' created[/green]")

    def destroy_cluster(self, name: str) -> None:
        console.print(f"[yellow]\u2139\ufe0f  Deleting k3d cluster '{name}'...[/yellow]")
        self._run("k3d", "cluster", "delete", name)
        console.print(f"[green]\u2705 Cluster '{name}' deleted[/green]")

    def get_access_credentials(self, name: str) -> str:
        """Return the kubeconfig document for cluster *name*."""
        return self._run("k3d", "kubeconfig", "get", name)

    def write_kubeconfig(self, name: str, output: Path) -> Path:
        """Write the cluster's kubeconfig to *output* and use it from now on."""
        output.parent.mkdir(parents=True, exist_ok=True)
        self._run("k3d", "kubeconfig", "write", name, "--output", str(output), "--overwrite")
        output.chmod(0o600)
        self.kubeconfig = output
        return output

    def cluster_reachable(self) -> bool:
        try:
            self._run("kubectl", "cluster-info", "--request-timeout", f"{COMMAND_TIMEOUT_SECONDS}s")
        except sh.ErrorReturnCode:
            return False
        return True

    def import_image(self, cluster: str, image: str) -> None:
        self._run("k3d", "image", "import", image, "-c", cluster)

    # ========================================================================
    # Existence and readiness queries
    # ========================================================================

    def namespace_exists(self, name: str) -> bool:
        return self._exists("kubectl", "get", "namespace", name)

    def service_exists(self, name: str, namespace: str) -> bool:
        return self._exists("kubectl", "get", "service", name, "-n", namespace)

    def deployment_exists(self, name: str, namespace: str) -> bool:
        return self._exists("kubectl", "get", "deployment", name, "-n", namespace)

    def ingress_exists(self, name: str, namespace: str) -> bool:
        return self._exists("kubectl", "get", "ingress", name, "-n", namespace)

    def manifest_applied(self, path: str | Path, namespace: str | None = None) -> bool:
        """Return True if every object in the manifest already exists."""
        args: list[str] = ["get", "-f", str(path)]
        if namespace:
            args += ["-n", namespace]
        return self._exists("kubectl", *args)

    def release_exists(self, name: str, namespace: str) -> bool:
        return self._exists("helm", "status", name, "-n", namespace)

    def pod_phase(self, selector: str, namespace: str) -> str | None:
        """Return the phase of the first pod matching *selector*, or None."""
        data = self._get_json("pods", "-n", namespace, "-l", selector)
        items = (data or {}).get("items", [])
        if not items:
            return None
        return items[0].get("status", {}).get("phase")

    def rollout_status(self, deployment: str, namespace: str) -> RolloutStatus:
        data = self._get_json("deployment", deployment, "-n", namespace)
        if data is None:
            return RolloutStatus.MISSING
        status = data.get("status", {})
        for condition in status.get("conditions", []):
            if condition.get("type") == "Progressing" and condition.get("reason") == "ProgressDeadlineExceeded":
                return RolloutStatus.FAILED
        desired = data.get("spec", {}).get("replicas", 1)
        if (
            status.get("observedGeneration", 0) >= data.get("metadata", {}).get("generation", 0)
            and status.get("updatedReplicas", 0) >= desired
            and status.get("availableReplicas", 0) >= desired
        ):
            return RolloutStatus.COMPLETE
        return RolloutStatus.PROGRESSING

    def read_secret_field(self, name: str, namespace: str, field: str) -> str | None:
        """Return a decoded Secret field, or None if the Secret or field is missing."""
        data = self._get_json("secret", name, "-n", namespace)
        if data is None:
            return None
        return _decode_secret(data.get("data", {}).get(field, ""))

    def find_secret(self, namespace: str, name_contains: str) -> str | None:
        try:
            out = self._run("kubectl", "get", "secrets", "-n", namespace, "-o", "name")
        except sh.ErrorReturnCode as err:
            if is_not_found(err):
                return None
            raise
        for line in out.splitlines():
            if name_contains in line:
                return line.strip().split("/", 1)[-1]
        return None

    # ========================================================================
    # Listing (teardown discovery)
    # ========================================================================

    def list_namespaces(self, selector: str) -> list[str]:
        data = self._get_json("namespaces", "-l", selector) or {}
        return [item["metadata"]["name"] for item in data.get("items", [])]

    def list_ingresses(self, selector: str) -> list[tuple[str, str]]:
        data = self._get_json("ingresses", "--all-namespaces", "-l", selector) or {}
        return [
            (item["metadata"]["namespace"], item["metadata"]["name"])
            for item in data.get("items", [])
        ]

    def list_releases(self, namespace: str) -> list[str]:
        out = self._run("helm", "list", "-n", namespace, "-q")
        return [line.strip() for line in out.splitlines() if line.strip()]

    # ========================================================================
    # Mutations
    # ========================================================================

    def apply_object(self, obj: dict) -> None:
        """Apply a single Kubernetes object given as a dict."""
        self._run("kubectl", "apply", "-f", "-", _in=yaml.safe_dump(obj, sort_keys=False))

    def apply_manifest(self, path: str | Path, namespace: str | None = None, validate: bool = True) -> None:
        args: list[str] = ["apply", "-f", str(path)]
        if namespace:
            args += ["-n", namespace]
        if not validate:
            args.append("--validate=false")
        self._run("kubectl", *args)

    def delete_manifest(self, path: str | Path, namespace: str | None = None) -> None:
        args: list[str] = ["delete", "-f", str(path), "--ignore-not-found"]
        if namespace:
            args += ["-n", namespace]
        self._run("kubectl", *args)

    def ensure_namespace(self, name: str, labels: dict[str, str]) -> None:
        self.apply_object({
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": name, "labels": dict(labels)},
        })

    def delete_namespace(self, name: str) -> None:
        self._run("kubectl", "delete", "namespace", name, "--ignore-not-found", "--wait=true")

    def delete_ingress(self, name: str, namespace: str) -> None:
        self._run("kubectl", "delete", "ingress", name, "-n", namespace, "--ignore-not-found")

    def add_helm_repo(self, name: str, url: str) -> None:
        self._run("helm", "repo", "add", name, url, "--force-update")

    def update_helm_repos(self) -> None:
        self._run("helm", "repo", "update")

    def helm_repos(self) -> list[str]:
        try:
            out = self._run("helm", "repo", "list", "-o", "json")
        except sh.ErrorReturnCode:
            # helm exits non-zero when no repositories are configured
            return []
        return [repo.get("name") for repo in json.loads(out or "[]")]

    def install_or_upgrade_release(
        self,
        name: str,
        chart: str,
        namespace: str,
        values_files: Sequence[Path] = (),
        set_values: Sequence[str] = (),
        version: str | None = None,
    ) -> None:
        args: list[str] = ["upgrade", "--install", name, chart, "-n", namespace]
        if version:
            args += ["--version", version]
        for values_file in values_files:
            args += ["-f", str(values_file)]
        for value in set_values:
            args += ["--set", value]
        self._run("helm", *args)

    def uninstall_release(self, name: str, namespace: str) -> None:
        self._run("helm", "uninstall", name, "-n", namespace)
