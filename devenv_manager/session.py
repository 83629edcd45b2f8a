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

"""Session context shared by every deploy, teardown and status operation."""

from __future__ import annotations

import fcntl
import os
import threading
from pathlib import Path
from typing import IO

from devenv_manager import logger
from devenv_manager.config import DevEnvConfig
from devenv_manager.constants import KUBECONFIG_FILE, LOCK_FILE, LOGS_DIR, REGISTRY_FILE
from devenv_manager.containers import ContainerRuntime
from devenv_manager.errors import SessionLocked
from devenv_manager.registry import ResourceKind, ResourceRegistry
from devenv_manager.runtime import ClusterRuntime
from devenv_manager.supervisor import ProcessHandle, Supervisor


class Session:
    """Everything one operation needs, passed explicitly instead of global state.

    State for a cluster lives under ``<state_dir>/<cluster_name>/``: the
    resource registry, the session kubeconfig, the lock file and the tunnel
    logs.

    Args:
        cfg: Resolved configuration.
        runtime: k3d/kubectl/helm wrapper, created if None.
        containers: Docker wrapper, created lazily if None.
        registry: Resource registry, loaded from the state directory if None.
    """

    def __init__(
        self,
        cfg: DevEnvConfig,
        runtime: ClusterRuntime | None = None,
        containers: ContainerRuntime | None = None,
        registry: ResourceRegistry | None = None,
    ) -> None:
        self.cfg = cfg
        self.cluster_name = cfg.cluster.cluster_name
        self.state_dir = cfg.session.state_dir / self.cluster_name
        self.cancel_event = threading.Event()
        self.runtime = runtime or ClusterRuntime()
        self.containers = containers or ContainerRuntime()
        self.registry = registry if registry is not None else ResourceRegistry.load(self.registry_path)
        self.supervisor = Supervisor(self.log_dir, on_launch=self._record_launch)
        self._lock_file: IO[str] | None = None

        if self.runtime.kubeconfig is None and self.kubeconfig_path.exists():
            self.runtime.kubeconfig = self.kubeconfig_path

    # -- Paths --

    @property
    def registry_path(self) -> Path:
        return self.state_dir / REGISTRY_FILE

    @property
    def kubeconfig_path(self) -> Path:
        return self.state_dir / KUBECONFIG_FILE

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILE

    @property
    def log_dir(self) -> Path:
        return self.state_dir / LOGS_DIR

    # -- Lock --

    def acquire_lock(self) -> None:
        """Take the exclusive per-cluster session lock without blocking.

        The registry is reloaded from disk once the lock is held.

        Raises:
            SessionLocked: If another process holds the lock.
        """
        if self._lock_file is not None:
            return
        self.state_dir.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as err:
            handle.close()
            holder = self.lock_holder()
            owner = f" (pid {holder})" if holder else ""
            raise SessionLocked(
                f"Another devenv session{owner} is active for cluster '{self.cluster_name}'"
            ) from err
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._lock_file = handle
        if self.registry.path == self.registry_path:
            # Pick up whatever the previous holder saved before it let go.
            self.registry = ResourceRegistry.load(self.registry_path)

    def release_lock(self) -> None:
        if self._lock_file is None:
            return
        try:
            fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            self._lock_file.close()
            self._lock_file = None

    def lock_holder(self) -> int | None:
        """Return the pid written by the current lock holder, if readable."""
        try:
            text = self.lock_path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return int(text) if text.isdigit() else None

    # -- Lifecycle --

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Abort waits and stop every tunnel. The registry is kept for teardown."""
        if not self.cancel_event.is_set():
            logger.info("Cancelling session for cluster %s", self.cluster_name)
        self.cancel_event.set()
        self.supervisor.stop_all()

    def close(self) -> None:
        self.supervisor.stop_all()
        self.registry.save()
        self.containers.close()
        self.release_lock()

    def __enter__(self) -> Session:
        self.acquire_lock()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _record_launch(self, handle: ProcessHandle, pid: int) -> None:
        self.registry.record(ResourceKind.LOCAL_PROCESS, handle.name, attributes={"pid": pid})
