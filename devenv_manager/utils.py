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

"""Utility functions for command checks and readiness predicates."""

from __future__ import annotations

import socket
from collections.abc import Callable

import sh

from devenv_manager import logger
from devenv_manager.errors import PreconditionFailed
from devenv_manager.poller import ReadinessState


def require_command(cmd: str) -> None:
    """Check if a command exists on the system PATH.

    Args:
        cmd: Name of the CLI command to check.

    Raises:
        PreconditionFailed: If the command is not found.
    """
    try:
        found = sh.which(cmd)
    except sh.ErrorReturnCode:
        found = None
    if not found:
        raise PreconditionFailed(f"Required command '{cmd}' not found. Please install it first.")


def query_state(
    query: Callable[[], bool], description: str
) -> Callable[[], ReadinessState]:
    """Turn a boolean query into a readiness predicate.

    A failing external command counts as "not yet": API servers and
    controllers routinely refuse requests while they start.
    """

    def _predicate() -> ReadinessState:
        try:
            return ReadinessState.READY if query() else ReadinessState.NOT_YET
        except sh.ErrorReturnCode as err:
            logger.debug("%s not ready yet: %s", description, err)
            return ReadinessState.NOT_YET

    return _predicate


def port_accepts_connections(address: str, port: int, timeout: float = 1.0) -> bool:
    """Return True if a TCP connection to *address*:*port* succeeds."""
    host = "127.0.0.1" if address in ("0.0.0.0", "") else address
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
