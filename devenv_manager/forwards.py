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

"""Supervised ``kubectl port-forward`` tunnels to in-cluster Services."""

from __future__ import annotations

from dataclasses import dataclass

from devenv_manager import console
from devenv_manager import ports
from devenv_manager.constants import FORWARD_PROBE_INTERVAL_SECONDS, FORWARD_PROBE_TIMEOUT_SECONDS
from devenv_manager.errors import LaunchFailed
from devenv_manager.pipeline import ProvisioningStep, RecordFn
from devenv_manager.poller import ReadinessCheck, ReadinessState, WaitOutcome, wait
from devenv_manager.registry import ResourceKind
from devenv_manager.session import Session
from devenv_manager.supervisor import ProcessState, RestartMode, RestartPolicy
from devenv_manager.utils import port_accepts_connections


@dataclass(frozen=True)
class Tunnel:
    """What to forward and where.

    Attributes:
        name: Supervisor handle name, also the registry identifier.
        service: Service to forward to.
        namespace: Namespace of the Service.
        remote_port: Service port.
        preferred_port: First local port to try.
        address: Local listen address.
        scheme: URL scheme used in the access summary.
    """

    name: str
    service: str
    namespace: str
    remote_port: int
    preferred_port: int
    address: str
    scheme: str = "http"

    def command(self, local_port: int) -> list[str]:
        return [
            "kubectl", "port-forward",
            f"svc/{self.service}",
            "-n", self.namespace,
            f"{local_port}:{self.remote_port}",
            "--address", self.address,
        ]


class ForwardSet:
    """The tunnels started in one session, and the local ports they got."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.local_ports: dict[str, int] = {}

    def step(self, tunnel: Tunnel, depends_on: tuple[str, ...] = ()) -> ProvisioningStep:
        """Provisioning step that keeps *tunnel* running under the supervisor."""
        session = self.session

        def _probe() -> bool:
            handle = session.supervisor.find(tunnel.name)
            if handle is None:
                return False
            state = session.supervisor.status(handle).state
            return state in (ProcessState.RUNNING, ProcessState.STARTING)

        def _apply(record: RecordFn) -> None:
            local_port = ports.allocate(tunnel.preferred_port, host=tunnel.address)
            policy = RestartPolicy(RestartMode.ALWAYS, session.cfg.session.restart_cooldown)
            try:
                session.supervisor.start(
                    tunnel.name, tunnel.command(local_port), policy, env=session.runtime.env
                )
            except LaunchFailed:
                ports.release(local_port)
                raise
            self.local_ports[tunnel.name] = local_port
            record(
                ResourceKind.LOCAL_PROCESS,
                tunnel.name,
                attributes={
                    "port": local_port,
                    "address": tunnel.address,
                    "service": f"{tunnel.namespace}/{tunnel.service}",
                },
            )
            console.print(
                f"[green]  \u2713 {tunnel.service}:{tunnel.remote_port} -> "
                f"{tunnel.address}:{local_port}[/green]"
            )

        return ProvisioningStep(
            name=f"forward/{tunnel.name}",
            probe=_probe,
            apply=_apply,
            depends_on=depends_on,
        )

    def url(self, tunnel: Tunnel) -> str | None:
        port = self.local_ports.get(tunnel.name)
        if port is None:
            return None
        host = "localhost" if tunnel.address in ("0.0.0.0", "127.0.0.1") else tunnel.address
        return f"{tunnel.scheme}://{host}:{port}"

    def probe(self, tunnel: Tunnel, timeout: float = FORWARD_PROBE_TIMEOUT_SECONDS) -> bool:
        """Wait briefly for the tunnel's local port to accept connections."""
        port = self.local_ports.get(tunnel.name)
        if port is None:
            return False

        def _predicate() -> ReadinessState:
            if port_accepts_connections(tunnel.address, port):
                return ReadinessState.READY
            return ReadinessState.NOT_YET

        check = ReadinessCheck(
            predicate=_predicate,
            interval=FORWARD_PROBE_INTERVAL_SECONDS,
            timeout=timeout,
            description=f"{tunnel.name} on port {port}",
        )
        return wait(check, self.session.cancel_event) is WaitOutcome.READY

    def release(self) -> None:
        for port in self.local_ports.values():
            ports.release(port)
        self.local_ports.clear()


def default_tunnels(session: Session, profile: str) -> tuple[Tunnel, Tunnel]:
    """Return the (Argo CD, application) tunnels for *profile*."""
    app = session.cfg.app
    argocd_port = app.argocd_port_for(profile)
    argocd = Tunnel(
        name="argocd-forward",
        service=app.argocd_service,
        namespace=app.argocd_namespace,
        remote_port=argocd_port,
        preferred_port=app.argocd_local_port,
        address=app.forward_address,
        scheme="https" if argocd_port == 443 else "http",
    )
    application = Tunnel(
        name=f"{app.app_service}-forward",
        service=app.app_service,
        namespace=app.app_namespace,
        remote_port=app.app_remote_port,
        preferred_port=app.app_local_port,
        address=app.forward_address,
    )
    return argocd, application
