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

"""Removal operations per resource kind, and discovery when no registry exists."""

from __future__ import annotations

import os
import signal
from collections.abc import Callable
from functools import cached_property
from pathlib import Path

import docker
import sh

from devenv_manager import console, logger
from devenv_manager.constants import (
    DOCKER_CLUSTER_LABEL,
    MANAGED_BY_SELECTOR,
    PORT_FORWARD_PATTERN,
)
from devenv_manager.errors import RemovalFailed
from devenv_manager.registry import ManagedResource, ResourceKind, ResourceRegistry
from devenv_manager.session import Session
from devenv_manager.teardown import RemovalOutcome, Remover


def _reason(err: sh.ErrorReturnCode) -> str:
    stderr = (err.stderr or b"").decode(errors="replace").strip()
    return stderr.splitlines()[-1] if stderr else str(err)


def _removed(flag: bool) -> RemovalOutcome:
    return RemovalOutcome.REMOVED if flag else RemovalOutcome.ALREADY_ABSENT


class Cleanup:
    """Removers bound to one session.

    In-cluster objects are reported already absent once the cluster itself
    is gone, without calling kubectl. When the cluster state itself cannot
    be read they fail and stay registered.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self._cluster_error = ""

    @cached_property
    def cluster_present(self) -> bool | None:
        """Whether the session cluster exists, or None when k3d could not be asked."""
        try:
            return self.session.runtime.cluster_exists(self.session.cluster_name)
        except sh.ErrorReturnCode as err:
            self._cluster_error = _reason(err)
        except sh.CommandNotFound as err:
            self._cluster_error = f"command not found: {err}"
        logger.warning("Could not list k3d clusters: %s", self._cluster_error)
        return None

    def removers(self) -> dict[ResourceKind, Remover]:
        return {
            ResourceKind.LOCAL_PROCESS: self.remove_process,
            ResourceKind.MANIFEST: self._in_cluster(self.remove_manifest),
            ResourceKind.INGRESS_OBJECT: self._in_cluster(self.remove_ingress),
            ResourceKind.NAMESPACE_SCOPED_RELEASE: self._in_cluster(self.remove_release),
            ResourceKind.NAMESPACE: self._in_cluster(self.remove_namespace),
            ResourceKind.CONTAINER: self._docker(self.session.containers.remove_container),
            ResourceKind.CONTAINER_IMAGE: self._docker(self.session.containers.remove_image),
            ResourceKind.CONTAINER_VOLUME: self._docker(self.session.containers.remove_volume),
            ResourceKind.CONTAINER_NETWORK: self._docker(self.session.containers.remove_network),
            ResourceKind.CLUSTER: self.remove_cluster,
        }

    # ========================================================================
    # Wrappers
    # ========================================================================

    def _in_cluster(self, remove: Remover) -> Remover:
        def _remover(resource: ManagedResource) -> RemovalOutcome:
            present = self.cluster_present
            if present is None:
                raise RemovalFailed(f"could not determine cluster state: {self._cluster_error}")
            if not present:
                return RemovalOutcome.ALREADY_ABSENT
            try:
                return remove(resource)
            except sh.ErrorReturnCode as err:
                raise RemovalFailed(_reason(err)) from err
            except sh.CommandNotFound as err:
                raise RemovalFailed(f"command not found: {err}") from err

        return _remover

    @staticmethod
    def _docker(remove: Callable[[str], bool]) -> Remover:
        def _remover(resource: ManagedResource) -> RemovalOutcome:
            try:
                return _removed(remove(resource.identifier))
            except docker.errors.APIError as err:
                raise RemovalFailed(str(err.explanation or err)) from err

        return _remover

    # ========================================================================
    # Removers
    # ========================================================================

    def remove_process(self, resource: ManagedResource) -> RemovalOutcome:
        """Terminate a port-forward left running by an earlier session."""
        pid = resource.attributes.get("pid")
        if not pid:
            return RemovalOutcome.ALREADY_ABSENT
        cmdline = self._command_line(int(pid))
        if cmdline is None:
            return RemovalOutcome.ALREADY_ABSENT
        if PORT_FORWARD_PATTERN not in cmdline:
            logger.debug("pid %s is no longer a port-forward (%s)", pid, cmdline.strip())
            return RemovalOutcome.ALREADY_ABSENT
        try:
            os.kill(int(pid), signal.SIGTERM)
        except ProcessLookupError:
            return RemovalOutcome.ALREADY_ABSENT
        except PermissionError as err:
            raise RemovalFailed(f"Not allowed to stop pid {pid}: {err}") from err
        return RemovalOutcome.REMOVED

    @staticmethod
    def _command_line(pid: int) -> str | None:
        try:
            return str(sh.ps("-o", "args=", "-p", str(pid)))
        except sh.ErrorReturnCode:
            return None

    def remove_manifest(self, resource: ManagedResource) -> RemovalOutcome:
        source = resource.attributes.get("source", resource.identifier)
        if "://" not in source and not Path(source).exists():
            raise RemovalFailed(f"Manifest {source} no longer exists; delete its objects manually")
        if not self.session.runtime.manifest_applied(source, resource.namespace):
            return RemovalOutcome.ALREADY_ABSENT
        self.session.runtime.delete_manifest(source, resource.namespace)
        return RemovalOutcome.REMOVED

    def remove_ingress(self, resource: ManagedResource) -> RemovalOutcome:
        runtime = self.session.runtime
        if not runtime.ingress_exists(resource.identifier, resource.namespace):
            return RemovalOutcome.ALREADY_ABSENT
        runtime.delete_ingress(resource.identifier, resource.namespace)
        return RemovalOutcome.REMOVED

    def remove_release(self, resource: ManagedResource) -> RemovalOutcome:
        runtime = self.session.runtime
        if not runtime.release_exists(resource.identifier, resource.namespace):
            return RemovalOutcome.ALREADY_ABSENT
        runtime.uninstall_release(resource.identifier, resource.namespace)
        return RemovalOutcome.REMOVED

    def remove_namespace(self, resource: ManagedResource) -> RemovalOutcome:
        runtime = self.session.runtime
        if not runtime.namespace_exists(resource.identifier):
            return RemovalOutcome.ALREADY_ABSENT
        runtime.delete_namespace(resource.identifier)
        return RemovalOutcome.REMOVED

    def remove_cluster(self, resource: ManagedResource) -> RemovalOutcome:
        runtime = self.session.runtime
        try:
            if not runtime.cluster_exists(resource.identifier):
                outcome = RemovalOutcome.ALREADY_ABSENT
            else:
                runtime.destroy_cluster(resource.identifier)
                outcome = RemovalOutcome.REMOVED
        except sh.ErrorReturnCode as err:
            raise RemovalFailed(_reason(err)) from err
        except sh.CommandNotFound as err:
            raise RemovalFailed(f"command not found: {err}") from err
        if resource.identifier == self.session.cluster_name:
            self.session.kubeconfig_path.unlink(missing_ok=True)
        return outcome


# ============================================================================
# Discovery
# ============================================================================

def _pgrep(pattern: str) -> list[int]:
    try:
        out = str(sh.pgrep("-f", pattern))
    except sh.ErrorReturnCode_1:
        return []
    except sh.CommandNotFound:
        logger.warning("pgrep not found; skipping port-forward discovery")
        return []
    own = os.getpid()
    return [int(pid) for pid in out.split() if pid.isdigit() and int(pid) != own]


def discover_resources(session: Session, purge_docker: bool = False) -> list[ManagedResource]:
    """List resources by naming and labelling convention.

    Used when the session registry is empty or unreadable. This is
    best-effort: only objects carrying the ``managed-by`` label, running
    port-forwards, and Docker objects labelled with the cluster name are
    found. With *purge_docker*, every container, image, volume and custom
    network on the host is listed instead.

    Args:
        session: Session for the cluster being torn down.
        purge_docker: Whether to ignore Docker labels.

    Returns:
        Discovered resources with creation order assigned in discovery order.
    """
    found = ResourceRegistry()
    runtime = session.runtime
    name = session.cluster_name

    for pid in _pgrep(PORT_FORWARD_PATTERN):
        found.record(ResourceKind.LOCAL_PROCESS, f"pid-{pid}", attributes={"pid": pid})

    try:
        cluster_present = runtime.cluster_exists(name)
    except sh.ErrorReturnCode as err:
        logger.warning("Could not list k3d clusters: %s", _reason(err))
        cluster_present = False
    except sh.CommandNotFound as err:
        logger.warning("Skipping cluster discovery, command not found: %s", err)
        cluster_present = False

    if cluster_present:
        found.record(ResourceKind.CLUSTER, name)
        try:
            for namespace in runtime.list_namespaces(MANAGED_BY_SELECTOR):
                found.record(ResourceKind.NAMESPACE, namespace)
                for release in runtime.list_releases(namespace):
                    found.record(ResourceKind.NAMESPACE_SCOPED_RELEASE, release, namespace=namespace)
            for namespace, ingress in runtime.list_ingresses(MANAGED_BY_SELECTOR):
                found.record(ResourceKind.INGRESS_OBJECT, ingress, namespace=namespace)
        except sh.ErrorReturnCode as err:
            logger.warning("Could not list cluster objects: %s", _reason(err))
        except sh.CommandNotFound as err:
            logger.warning("Skipping cluster object discovery, command not found: %s", err)

    label = None if purge_docker else f"{DOCKER_CLUSTER_LABEL}={name}"
    containers = session.containers
    try:
        for container in containers.list_containers(label):
            found.record(ResourceKind.CONTAINER, container)
        for image in containers.list_images(label):
            found.record(ResourceKind.CONTAINER_IMAGE, image)
        for volume in containers.list_volumes(label):
            found.record(ResourceKind.CONTAINER_VOLUME, volume)
        for network in containers.list_networks(label):
            found.record(ResourceKind.CONTAINER_NETWORK, network)
    except docker.errors.DockerException as err:
        console.print(f"[yellow]\u26a0\ufe0f  Skipping Docker discovery: {err}[/yellow]")

    return found.snapshot()
