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

"""Shared fixtures and in-memory fakes for the external collaborators."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from devenv_manager import ports
from devenv_manager.config import AppConfig, ClusterConfig, DevEnvConfig, GitOpsConfig, SessionConfig
from devenv_manager.runtime import RolloutStatus
from devenv_manager.session import Session


class FakeClusterRuntime:
    """In-memory stand-in for ClusterRuntime.

    Objects live in plain sets; ``on_apply`` maps a manifest source to a
    callback that simulates the objects it creates.
    """

    def __init__(self) -> None:
        self.kubeconfig: Path | None = None
        self.clusters: set[str] = set()
        self.namespaces: set[str] = set()
        self.namespace_labels: dict[str, dict[str, str]] = {}
        self.deployments: set[tuple[str, str]] = set()
        self.services: set[tuple[str, str]] = set()
        self.ingresses: set[tuple[str, str]] = set()
        self.releases: set[tuple[str, str]] = set()
        self.manifests: set[tuple[str, str | None]] = set()
        self.repos: set[str] = set()
        self.secrets: dict[tuple[str, str, str], str] = {}
        self.pod_phases: dict[tuple[str, str], str] = {}
        self.rollouts: dict[tuple[str, str], RolloutStatus] = {}
        self.on_apply: dict[str, Callable[[], None]] = {}
        self.reachable = True
        self.fail_destroy: Exception | None = None
        self.calls: list[tuple] = []

    @property
    def env(self) -> dict[str, str]:
        return dict(os.environ)

    # -- cluster --

    def list_clusters(self) -> list[str]:
        return sorted(self.clusters)

    def cluster_exists(self, name: str) -> bool:
        return name in self.clusters

    def create_cluster(self, name: str, **kwargs) -> None:
        self.calls.append(("create_cluster", name))
        self.clusters.add(name)

    def destroy_cluster(self, name: str) -> None:
        self.calls.append(("destroy_cluster", name))
        if self.fail_destroy is not None:
            raise self.fail_destroy
        self.clusters.discard(name)

    def write_kubeconfig(self, name: str, output: Path) -> Path:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(f"cluster: {name}\n")
        self.kubeconfig = output
        return output

    def cluster_reachable(self) -> bool:
        return self.reachable

    def import_image(self, cluster: str, image: str) -> None:
        self.calls.append(("import_image", cluster, image))

    # -- queries --

    def namespace_exists(self, name: str) -> bool:
        return name in self.namespaces

    def service_exists(self, name: str, namespace: str) -> bool:
        return (name, namespace) in self.services

    def deployment_exists(self, name: str, namespace: str) -> bool:
        return (name, namespace) in self.deployments

    def ingress_exists(self, name: str, namespace: str) -> bool:
        return (name, namespace) in self.ingresses

    def manifest_applied(self, path, namespace=None) -> bool:
        return (str(path), namespace) in self.manifests

    def release_exists(self, name: str, namespace: str) -> bool:
        return (name, namespace) in self.releases

    def pod_phase(self, selector: str, namespace: str) -> str | None:
        return self.pod_phases.get((selector, namespace), "Running")

    def rollout_status(self, deployment: str, namespace: str) -> RolloutStatus:
        return self.rollouts.get((deployment, namespace), RolloutStatus.COMPLETE)

    def read_secret_field(self, name: str, namespace: str, field: str) -> str | None:
        return self.secrets.get((name, namespace, field))

    def find_secret(self, namespace: str, name_contains: str) -> str | None:
        for name, ns, _ in self.secrets:
            if ns == namespace and name_contains in name:
                return name
        return None

    def list_namespaces(self, selector: str) -> list[str]:
        key, _, value = selector.partition("=")
        return sorted(
            ns for ns in self.namespaces if self.namespace_labels.get(ns, {}).get(key) == value
        )

    def list_ingresses(self, selector: str) -> list[tuple[str, str]]:
        return sorted((ns, name) for name, ns in self.ingresses)

    def list_releases(self, namespace: str) -> list[str]:
        return sorted(name for name, ns in self.releases if ns == namespace)

    # -- mutations --

    def apply_object(self, obj: dict) -> None:
        meta = obj["metadata"]
        if obj["kind"] == "Ingress":
            self.ingresses.add((meta["name"], meta["namespace"]))
        self.calls.append(("apply_object", obj["kind"], meta["name"]))

    def apply_manifest(self, path, namespace=None, validate=True) -> None:
        self.calls.append(("apply_manifest", str(path), namespace))
        self.manifests.add((str(path), namespace))
        callback = self.on_apply.get(str(path))
        if callback is not None:
            callback()

    def delete_manifest(self, path, namespace=None) -> None:
        self.calls.append(("delete_manifest", str(path), namespace))
        self.manifests.discard((str(path), namespace))

    def ensure_namespace(self, name: str, labels: dict[str, str]) -> None:
        self.namespaces.add(name)
        self.namespace_labels[name] = dict(labels)

    def delete_namespace(self, name: str) -> None:
        self.calls.append(("delete_namespace", name))
        self.namespaces.discard(name)

    def delete_ingress(self, name: str, namespace: str) -> None:
        self.calls.append(("delete_ingress", name, namespace))
        self.ingresses.discard((name, namespace))

    def add_helm_repo(self, name: str, url: str) -> None:
        self.repos.add(name)

    def update_helm_repos(self) -> None:
        self.calls.append(("update_helm_repos",))

    def helm_repos(self) -> list[str]:
        return sorted(self.repos)

    def install_or_upgrade_release(self, name, chart, namespace, **kwargs) -> None:
        self.calls.append(("install_release", name, chart, namespace))
        self.releases.add((name, namespace))

    def uninstall_release(self, name: str, namespace: str) -> None:
        self.calls.append(("uninstall_release", name, namespace))
        self.releases.discard((name, namespace))


class FakeContainers:
    """In-memory stand-in for ContainerRuntime."""

    def __init__(self) -> None:
        self.containers: set[str] = set()
        self.images: set[str] = set()
        self.volumes: set[str] = set()
        self.networks: set[str] = set()
        self.node_images: set[tuple[str, str]] = set()
        self.built: list[tuple[Path, str, dict[str, str]]] = []
        self.closed = False

    def close(self) -> None:
        self.closed = True

    def list_containers(self, label: str | None = None) -> list[str]:
        return sorted(self.containers)

    def remove_container(self, name: str) -> bool:
        if name not in self.containers:
            return False
        self.containers.discard(name)
        return True

    def list_images(self, label: str | None = None) -> list[str]:
        return sorted(self.images)

    def image_exists(self, ref: str) -> bool:
        return ref in self.images

    def remove_image(self, ref: str) -> bool:
        if ref not in self.images:
            return False
        self.images.discard(ref)
        return True

    def build_image(self, context: Path, tag: str, labels: dict[str, str]) -> None:
        self.built.append((context, tag, labels))
        self.images.add(tag)

    def node_has_image(self, cluster: str, ref: str) -> bool:
        return (cluster, ref) in self.node_images

    def list_volumes(self, label: str | None = None) -> list[str]:
        return sorted(self.volumes)

    def remove_volume(self, name: str) -> bool:
        if name not in self.volumes:
            return False
        self.volumes.discard(name)
        return True

    def list_networks(self, label: str | None = None) -> list[str]:
        return sorted(self.networks)

    def remove_network(self, name: str) -> bool:
        if name not in self.networks:
            return False
        self.networks.discard(name)
        return True


@pytest.fixture(autouse=True)
def _clear_port_reservations():
    ports._reserved.clear()
    yield
    ports._reserved.clear()


@pytest.fixture
def manifest_file(tmp_path: Path) -> Path:
    path = tmp_path / "application.yaml"
    path.write_text("apiVersion: v1\nkind: Service\nmetadata:\n  name: app\n")
    return path


@pytest.fixture
def cfg(tmp_path: Path, manifest_file: Path) -> DevEnvConfig:
    return DevEnvConfig(
        cluster=ClusterConfig(cluster_name="test-cluster"),
        app=AppConfig(app_manifest=manifest_file, app_namespace="dev", argocd_namespace="argocd"),
        gitops=GitOpsConfig(),
        session=SessionConfig(
            state_dir=tmp_path / "state",
            restart_cooldown=0.05,
            poll_interval=0.01,
            wait_timeout=1.0,
            rollout_timeout=1.0,
        ),
    )


@pytest.fixture
def runtime() -> FakeClusterRuntime:
    return FakeClusterRuntime()


@pytest.fixture
def containers() -> FakeContainers:
    return FakeContainers()


@pytest.fixture
def session(cfg: DevEnvConfig, runtime: FakeClusterRuntime, containers: FakeContainers):
    sess = Session(cfg, runtime=runtime, containers=containers)
    yield sess
    sess.supervisor.stop_all()
    sess.release_lock()
