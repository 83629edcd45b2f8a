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

"""Registry of resources created during a provisioning session."""

from __future__ import annotations

import dataclasses
import os
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from devenv_manager import logger


class ResourceKind(str, Enum):
    """Categories of resources the provisioning pipeline can create."""

    LOCAL_PROCESS = "local-process"
    MANIFEST = "manifest"
    INGRESS_OBJECT = "ingress-object"
    NAMESPACE_SCOPED_RELEASE = "namespace-scoped-release"
    NAMESPACE = "namespace"
    CONTAINER = "container"
    CONTAINER_IMAGE = "container-image"
    CONTAINER_VOLUME = "container-volume"
    CONTAINER_NETWORK = "container-network"
    CLUSTER = "cluster"


@dataclass(frozen=True)
class ManagedResource:
    """A resource created by a provisioning step and owned by the session.

    Attributes:
        kind: Resource category, which selects the removal operation.
        identifier: Name used by the external tool to address the resource.
        creation_order: Position assigned when the resource was recorded.
        namespace: Kubernetes namespace for namespaced objects, or None.
        attributes: Extra data needed for removal (pid, manifest path, ...).
    """

    kind: ResourceKind
    identifier: str
    creation_order: int
    namespace: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> tuple[ResourceKind, str | None, str]:
        return self.kind, self.namespace, self.identifier

    def describe(self) -> str:
        """Return a short ``kind ns/name`` label for console output."""
        target = f"{self.namespace}/{self.identifier}" if self.namespace else self.identifier
        return f"{self.kind.value} {target}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "identifier": self.identifier,
            "creation_order": self.creation_order,
        }
        if self.namespace:
            data["namespace"] = self.namespace
        if self.attributes:
            data["attributes"] = dict(self.attributes)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManagedResource:
        return cls(
            kind=ResourceKind(data["kind"]),
            identifier=str(data["identifier"]),
            creation_order=int(data["creation_order"]),
            namespace=data.get("namespace"),
            attributes=dict(data.get("attributes") or {}),
        )


class ResourceRegistry:
    """Ordered, lock-guarded record of managed resources.

    The pipeline appends, the teardown engine removes, and supervisor watcher
    threads update local-process entries when a tunnel is relaunched. When a
    path is given, every mutation is written through to a YAML file so that a
    later ``teardown`` can find what this session created. The file is
    advisory: a missing or unreadable file loads as an empty registry.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._resources: dict[tuple, ManagedResource] = {}
        self._next_order = 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def __iter__(self) -> Iterator[ManagedResource]:
        return iter(self.snapshot())

    def record(
        self,
        kind: ResourceKind,
        identifier: str,
        *,
        namespace: str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> ManagedResource:
        """Append a resource, or refresh the attributes of an existing one.

        Recording the same (kind, namespace, identifier) twice keeps the
        original creation order, so re-running a pipeline never grows the
        registry.

        Args:
            kind: Resource category.
            identifier: Name of the resource.
            namespace: Namespace for namespaced objects.
            attributes: Extra removal data, merged into any existing entry.

        Returns:
            The stored ManagedResource.
        """
        with self._lock:
            key = (kind, namespace, identifier)
            existing = self._resources.get(key)
            if existing is not None:
                merged = {**existing.attributes, **(attributes or {})}
                resource = dataclasses.replace(existing, attributes=merged)
            else:
                resource = ManagedResource(
                    kind=kind,
                    identifier=identifier,
                    creation_order=self._next_order,
                    namespace=namespace,
                    attributes=dict(attributes or {}),
                )
                self._next_order += 1
            self._resources[key] = resource
            self._save_locked()
            return resource

    def remove(self, resource: ManagedResource) -> None:
        """Drop a resource from the registry. Unknown resources are ignored."""
        with self._lock:
            if self._resources.pop(resource.key, None) is not None:
                self._save_locked()

    def get(
        self, kind: ResourceKind, identifier: str, namespace: str | None = None
    ) -> ManagedResource | None:
        with self._lock:
            return self._resources.get((kind, namespace, identifier))

    def snapshot(self) -> list[ManagedResource]:
        """Return the resources sorted by creation order."""
        with self._lock:
            return sorted(self._resources.values(), key=lambda r: r.creation_order)

    def save(self) -> None:
        with self._lock:
            self._save_locked()

    def _save_locked(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "next_order": self._next_order,
            "resources": [
                r.to_dict()
                for r in sorted(self._resources.values(), key=lambda r: r.creation_order)
            ],
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            yaml.safe_dump(payload, f, sort_keys=False)
        os.replace(tmp_path, self.path)

    @classmethod
    def load(cls, path: Path) -> ResourceRegistry:
        """Load a registry from *path*, tolerating absence and corruption.

        Args:
            path: Location of the registry YAML file.

        Returns:
            A registry bound to *path*. Empty if the file is missing or
            cannot be parsed.
        """
        registry = cls(path)
        if not path.exists():
            return registry
        try:
            with open(path) as f:
                payload = yaml.safe_load(f) or {}
            resources = [ManagedResource.from_dict(item) for item in payload.get("resources", [])]
            stored_next = int(payload.get("next_order", 1))
        except (OSError, yaml.YAMLError, KeyError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring unreadable resource registry %s: %s", path, exc)
            return registry

        for resource in resources:
            registry._resources[resource.key] = resource
        highest = max((r.creation_order for r in resources), default=0)
        registry._next_order = max(stored_next, highest + 1)
        return registry
