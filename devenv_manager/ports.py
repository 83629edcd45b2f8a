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

"""Local port allocation for forwarded services.

Ports are probed by binding them, and the probe plus reservation run under a
single lock, so two allocations in this process never return the same port.
Another process can still take a port between ``allocate`` and the moment the
tunnel binds it; that window is not closed here.
"""

from __future__ import annotations

import socket
import threading

from devenv_manager import logger
from devenv_manager.errors import NoPortAvailable

MAX_PORT = 65535

_lock = threading.Lock()
_reserved: set[int] = set()


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if a TCP socket can bind *host*:*port* right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def allocate(preferred: int, host: str = "127.0.0.1") -> int:
    """Return the first free port at or above *preferred* and reserve it.

    Args:
        preferred: Port to try first.
        host: Address the forwarded port will listen on.

    Returns:
        The reserved port number.

    Raises:
        ValueError: If *preferred* is outside 1-65535.
        NoPortAvailable: If every port from *preferred* to 65535 is taken.
    """
    if not 1 <= preferred <= MAX_PORT:
        raise ValueError(f"Port must be between 1 and {MAX_PORT}, got {preferred}")

    with _lock:
        for port in range(preferred, MAX_PORT + 1):
            if port in _reserved:
                continue
            if is_port_free(port, host):
                _reserved.add(port)
                if port != preferred:
                    logger.info("Port %d is busy, using %d instead", preferred, port)
                return port
    raise NoPortAvailable(f"No free port between {preferred} and {MAX_PORT} on {host}")


def release(port: int) -> None:
    """Forget a reservation made by :func:`allocate`."""
    with _lock:
        _reserved.discard(port)


def reserved_ports() -> frozenset[int]:
    with _lock:
        return frozenset(_reserved)
