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

"""Docker access: application image builds and container-runtime cleanup."""

from __future__ import annotations

from pathlib import Path

import docker

from devenv_manager import logger
from devenv_manager.constants import PROTECTED_NETWORKS


def _label_filter(label: str | None) -> dict[str, str]:
    return {"label": label} if label else {}


class ContainerRuntime:
    """Docker SDK wrapper.

    Remove methods return False when the object is already gone and let any
    other ``docker.errors.APIError`` propagate.

    Args:
        client: Docker client, created from the environment on first use if None.
    """

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ========================================================================
    # Containers
    # ========================================================================

    def list_containers(self, label: str | None = None) -> list[str]:
        return [c.name for c in self.client.containers.list(all=True, filters=_label_filter(label))]

    def remove_container(self, name: str) -> bool:
        """Stop and remove a container."""
        try:
            container = self.client.containers.get(name)
        except docker.errors.NotFound:
            return False
        if container.status == "running":
            container.stop()
        container.remove(force=True)
        return True

    # ========================================================================
    # Images
    # ========================================================================

    def list_images(self, label: str | None = None) -> list[str]:
        refs: list[str] = []
        for image in self.client.images.list(filters=_label_filter(label)):
            refs.extend(image.tags or [image.id])
        return refs

    def image_exists(self, ref: str) -> bool:
        try:
            self.client.images.get(ref)
        except docker.errors.ImageNotFound:
            return False
        return True

    def remove_image(self, ref: str) -> bool:
        try:
            self.client.images.remove(image=ref, force=True)
        except docker.errors.ImageNotFound:
            return False
        return True

    def build_image(self, context: Path, tag: str, labels: dict[str, str]) -> None:
        """Build *tag* from the Dockerfile in *context*."""
        logger.info("Building image %s from %s", tag, context)
        _, build_log = self.client.images.build(path=str(context), tag=tag, labels=labels, rm=True)
        for chunk in build_log:
            line = chunk.get("stream", "").rstrip()
            if line:
                logger.debug(line)

    def node_has_image(self, cluster: str, ref: str) -> bool:
        """Return True if the cluster's server node already holds *ref*."""
        try:
            node = self.client.containers.get(f"k3d-{cluster}-server-0")
        except docker.errors.NotFound:
            return False
        exit_code, output = node.exec_run(["crictl", "images", "-q", ref])
        return exit_code == 0 and bool(output.strip())

    # ========================================================================
    # Volumes and networks
    # ========================================================================

    def list_volumes(self, label: str | None = None) -> list[str]:
        return [v.name for v in self.client.volumes.list(filters=_label_filter(label))]

    def remove_volume(self, name: str) -> bool:
        try:
            self.client.volumes.get(name).remove(force=True)
        except docker.errors.NotFound:
            return False
        return True

    def list_networks(self, label: str | None = None) -> list[str]:
        """List custom networks. The default bridge, host and none networks are never listed."""
        return [
            n.name
            for n in self.client.networks.list(filters=_label_filter(label))
            if n.name not in PROTECTED_NETWORKS
        ]

    def remove_network(self, name: str) -> bool:
        if name in PROTECTED_NETWORKS:
            raise ValueError(f"Refusing to remove built-in network '{name}'")
        try:
            self.client.networks.get(name).remove()
        except docker.errors.NotFound:
            return False
        return True
