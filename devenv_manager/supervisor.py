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

"""Process supervisor for long-running local commands such as port-forwards."""

from __future__ import annotations

import itertools
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from devenv_manager import logger
from devenv_manager.constants import (
    DEFAULT_RESTART_COOLDOWN_SECONDS,
    PROCESS_TERMINATE_GRACE_SECONDS,
)
from devenv_manager.errors import LaunchFailed


class ProcessState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    STOPPED = "stopped"


class RestartMode(Enum):
    ALWAYS = "always"
    NEVER = "never"


@dataclass(frozen=True)
class RestartPolicy:
    """When and how fast a supervised process is relaunched.

    Attributes:
        mode: ALWAYS relaunches after every exit until stopped; NEVER leaves
            the handle in EXITED after the first exit.
        cooldown: Seconds to wait between an exit and the relaunch.
    """

    mode: RestartMode = RestartMode.ALWAYS
    cooldown: float = DEFAULT_RESTART_COOLDOWN_SECONDS


@dataclass(frozen=True)
class ProcessHandle:
    """Opaque reference to a supervised process."""

    name: str
    serial: int


@dataclass(frozen=True)
class SupervisedProcess:
    """Point-in-time view of a supervised process."""

    name: str
    command: tuple[str, ...]
    restart_policy: RestartPolicy
    state: ProcessState
    restart_count: int
    pid: int | None
    last_exit_code: int | None
    log_path: Path


@dataclass
class _Entry:
    handle: ProcessHandle
    command: tuple[str, ...]
    policy: RestartPolicy
    log_path: Path
    env: dict[str, str] | None
    state: ProcessState = ProcessState.STARTING
    restart_count: int = 0
    last_exit_code: int | None = None
    proc: subprocess.Popen | None = None
    thread: threading.Thread | None = None
    stopping: threading.Event = field(default_factory=threading.Event)


class Supervisor:
    """Launches commands and restarts them according to their policy.

    Each handle gets one watcher thread. Restarts happen inside that thread
    while holding the supervisor lock, so a handle never has two live
    children at once, and ``stop`` can never race a relaunch.

    Args:
        log_dir: Directory for per-process append-only logs.
        env: Default environment for children (inherits the parent's if None).
        on_launch: Called as ``on_launch(handle, pid)`` after every
            successful (re)launch.
    """

    def __init__(
        self,
        log_dir: Path,
        env: dict[str, str] | None = None,
        on_launch: Callable[[ProcessHandle, int], None] | None = None,
    ) -> None:
        self.log_dir = log_dir
        self.env = env
        self.on_launch = on_launch
        self._lock = threading.RLock()
        self._entries: dict[ProcessHandle, _Entry] = {}
        self._serials = itertools.count(1)

    # ========================================================================
    # Public API
    # ========================================================================

    def start(
        self,
        name: str,
        command: Sequence[str],
        policy: RestartPolicy | None = None,
        log_path: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        """Launch *command* and begin supervising it.

        Args:
            name: Logical name, also used for the default log file name.
            command: Executable and arguments.
            policy: Restart policy, ALWAYS with the default cool-down if None.
            log_path: Log file, ``<log_dir>/<name>.log`` if None.
            env: Child environment, the supervisor default if None.

        Returns:
            Handle for status and stop calls.

        Raises:
            LaunchFailed: If the first launch fails (missing executable,
                permission denied, ...). No restart loop is entered.
        """
        handle = ProcessHandle(name=name, serial=next(self._serials))
        entry = _Entry(
            handle=handle,
            command=tuple(command),
            policy=policy or RestartPolicy(),
            log_path=log_path or self.log_dir / f"{name}.log",
            env=env if env is not None else self.env,
        )
        entry.log_path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            try:
                self._launch(entry)
            except OSError as err:
                self._log(entry, f"launch failed: {err}")
                raise LaunchFailed(f"Could not start '{name}' ({entry.command[0]}): {err}") from err
            self._entries[handle] = entry

        entry.thread = threading.Thread(
            target=self._watch, args=(entry,), name=f"supervisor-{name}", daemon=True
        )
        entry.thread.start()
        return handle

    def stop(self, handle: ProcessHandle) -> None:
        """Stop supervising *handle* and terminate its child. Idempotent."""
        with self._lock:
            entry = self._entries[handle]
            if entry.state is ProcessState.STOPPED:
                return
            entry.stopping.set()
            entry.state = ProcessState.STOPPED
            proc = entry.proc

        if proc is not None:
            _terminate(proc)
        if entry.thread is not None and entry.thread is not threading.current_thread():
            entry.thread.join(timeout=PROCESS_TERMINATE_GRACE_SECONDS * 2)
        self._log(entry, "stopped")
        logger.debug("Stopped supervised process %s", handle.name)

    def stop_all(self) -> None:
        for handle in self.handles():
            self.stop(handle)

    def status(self, handle: ProcessHandle) -> SupervisedProcess:
        with self._lock:
            entry = self._entries[handle]
            pid = entry.proc.pid if entry.proc is not None and entry.state is ProcessState.RUNNING else None
            return SupervisedProcess(
                name=handle.name,
                command=entry.command,
                restart_policy=entry.policy,
                state=entry.state,
                restart_count=entry.restart_count,
                pid=pid,
                last_exit_code=entry.last_exit_code,
                log_path=entry.log_path,
            )

    def handles(self) -> list[ProcessHandle]:
        with self._lock:
            return list(self._entries)

    def find(self, name: str) -> ProcessHandle | None:
        """Return the most recent handle named *name* that is not stopped."""
        with self._lock:
            for handle in reversed(list(self._entries)):
                if handle.name == name and self._entries[handle].state is not ProcessState.STOPPED:
                    return handle
        return None

    # ========================================================================
    # Internals
    # ========================================================================

    def _launch(self, entry: _Entry) -> None:
        """Spawn the child with output appended to the entry's log. Caller holds the lock."""
        entry.state = ProcessState.STARTING
        self._log(entry, f"starting: {' '.join(entry.command)}")
        with open(entry.log_path, "ab") as log_file:
            entry.proc = subprocess.Popen(
                entry.command,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=entry.env,
                start_new_session=True,
            )
        entry.state = ProcessState.RUNNING
        logger.debug("Launched %s (pid %d)", entry.handle.name, entry.proc.pid)
        if self.on_launch is not None:
            # The child is already running; a failing callback must not trigger a relaunch.
            try:
                self.on_launch(entry.handle, entry.proc.pid)
            except Exception:
                logger.exception("on_launch callback failed for %s", entry.handle.name)

    def _watch(self, entry: _Entry) -> None:
        while True:
            code = entry.proc.wait()
            with self._lock:
                entry.last_exit_code = code
                if entry.stopping.is_set():
                    return
                if entry.policy.mode is RestartMode.NEVER:
                    entry.state = ProcessState.EXITED
                    self._log(entry, f"exited with code {code}")
                    return
                entry.state = ProcessState.STARTING
            self._log(entry, f"exited with code {code}, restarting in {entry.policy.cooldown:g}s")
            logger.warning(
                "%s exited with code %s, restarting in %gs", entry.handle.name, code, entry.policy.cooldown
            )
            if not self._relaunch(entry):
                return

    def _relaunch(self, entry: _Entry) -> bool:
        """Wait out the cool-down and relaunch. Returns False once stopped."""
        while not entry.stopping.wait(entry.policy.cooldown):
            with self._lock:
                if entry.stopping.is_set():
                    return False
                try:
                    self._launch(entry)
                except OSError as err:
                    self._log(entry, f"relaunch failed: {err}")
                    logger.error("Could not relaunch %s: %s", entry.handle.name, err)
                    continue
                entry.restart_count += 1
                return True
        return False

    @staticmethod
    def _log(entry: _Entry, message: str) -> None:
        stamp = datetime.now().isoformat(timespec="seconds")
        with open(entry.log_path, "a") as log_file:
            log_file.write(f"[{stamp}] supervisor: {message}\n")


def _terminate(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=PROCESS_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
