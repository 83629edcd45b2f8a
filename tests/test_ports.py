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

"""Unit tests for local port allocation."""

from __future__ import annotations

import socket
import threading

import pytest

from devenv_manager import ports
from devenv_manager.errors import NoPortAvailable


class TestAllocate:
    """Tests for ports.allocate()."""

    def test_returns_preferred_when_free(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should hand out the preferred port when nothing holds it."""
        monkeypatch.setattr(ports, "is_port_free", lambda port, host: True)

        assert ports.allocate(8080) == 8080
        assert 8080 in ports.reserved_ports()

    def test_shifts_past_busy_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should return the next free port when the preferred one is taken."""
        monkeypatch.setattr(ports, "is_port_free", lambda port, host: port not in (8080, 8081))

        assert ports.allocate(8080) == 8082

    def test_skips_port_held_by_real_listener(self) -> None:
        """Should detect a port bound by another socket."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen()
            busy = listener.getsockname()[1]

            allocated = ports.allocate(busy)

        assert allocated > busy

    def test_reserved_port_not_handed_out_twice(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should skip ports reserved by an earlier allocation until released."""
        monkeypatch.setattr(ports, "is_port_free", lambda port, host: True)

        first = ports.allocate(9000)
        second = ports.allocate(9000)
        ports.release(first)
        third = ports.allocate(9000)

        assert (first, second, third) == (9000, 9001, 9000)

    def test_concurrent_allocations_are_distinct(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should never give two concurrent callers the same port."""
        monkeypatch.setattr(ports, "is_port_free", lambda port, host: True)
        results: list[int] = []
        results_lock = threading.Lock()

        def _worker() -> None:
            port = ports.allocate(20000)
            with results_lock:
                results.append(port)

        threads = [threading.Thread(target=_worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 20
        assert len(set(results)) == 20

    @pytest.mark.parametrize("preferred", [0, -5, 65536])
    def test_rejects_out_of_range(self, preferred: int) -> None:
        """Should raise ValueError for ports outside 1-65535."""
        with pytest.raises(ValueError, match="between 1 and 65535"):
            ports.allocate(preferred)

    def test_raises_when_range_exhausted(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Should raise NoPortAvailable when no port up to 65535 is free."""
        monkeypatch.setattr(ports, "is_port_free", lambda port, host: False)

        with pytest.raises(NoPortAvailable):
            ports.allocate(65530)


class TestIsPortFree:
    """Tests for the bind probe."""

    def test_bound_port_is_not_free(self) -> None:
        """Should report a listening port as busy."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen()
            assert ports.is_port_free(listener.getsockname()[1]) is False
