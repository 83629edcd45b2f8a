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

"""Orchestration functions that compose domain modules into workflows."""

from __future__ import annotations

import os
import shutil
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from enum import IntEnum

import sh
import typer
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from devenv_manager import console, logger
from devenv_manager.cleanup import Cleanup, discover_resources
from devenv_manager.components import (
    application_steps,
    argocd_admin_password,
    gitlab_root_password,
    infrastructure_steps,
)
from devenv_manager.config import ActionFlags, DevEnvConfig, display_config
from devenv_manager.constants import PROFILE_GITOPS, SESSION_LOCK_WAIT_SECONDS
from devenv_manager.errors import SessionLocked
from devenv_manager.forwards import ForwardSet, Tunnel, default_tunnels
from devenv_manager.pipeline import PipelineResult, run_pipeline
from devenv_manager.poller import ReadinessCheck, ReadinessState, WaitOutcome, wait
from devenv_manager.registry import ResourceKind
from devenv_manager.session import Session
from devenv_manager.teardown import render_report, teardown
from devenv_manager.utils import require_command


class ExitCode(IntEnum):
    SUCCESS = 0
    PARTIAL = 1
    FATAL = 2


@contextmanager
def _cancel_on_signals(session: Session) -> Iterator[None]:
    """Route SIGINT and SIGTERM to ``session.cancel`` for the duration."""

    def _handler(signum: int, _frame: object) -> None:
        console.print(f"\n[yellow]\u2139\ufe0f  Received {signal.Signals(signum).name}, shutting down...[/yellow]")
        session.cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# ============================================================================
# Deploy
# ============================================================================

def _run_prerequisites(flags: ActionFlags) -> None:
    """Check the CLI tools the requested profile needs.

    Args:
        flags: Resolved action flags to determine which tools are needed.

    Raises:
        PreconditionFailed: If a tool is missing.
    """
    prereqs = ["k3d", "kubectl", "docker"]
    if flags.profile == PROFILE_GITOPS:
        prereqs.append("helm")
    console.print(Panel.fit("Checking prerequisites", style="bold blue"))
    for cmd in prereqs:
        require_command(cmd)
    console.print("[green]\u2705 All required tools are available[/green]")


def _report_failure(result: PipelineResult) -> None:
    console.print(
        f"[red]\u274c Provisioning stopped at step '{result.failed_step}': "
        f"{escape(str(result.error))}[/red]"
    )
    applied = ", ".join(result.applied) or "none"
    console.print(f"[yellow]   Steps applied before the failure: {applied}[/yellow]")
    console.print("[yellow]   Created resources stay recorded; run 'teardown' to remove them.[/yellow]")


def _print_argocd_access(session: Session, forwards: ForwardSet, argocd: Tunnel) -> None:
    console.print(Panel.fit("Argo CD", style="bold blue"))
    url = forwards.url(argocd)
    if url:
        console.print(f"  URL      : {url}")
    console.print("  Username : admin")
    password = argocd_admin_password(session)
    console.print(f"  Password : {password or '(not available yet)'}")


def _print_summary(
    session: Session, flags: ActionFlags, forwards: ForwardSet, tunnels: tuple[Tunnel, ...]
) -> None:
    table = Table(title="Access summary")
    table.add_column("Service", style="cyan")
    table.add_column("Local URL")
    table.add_column("Log")
    for tunnel in tunnels:
        handle = session.supervisor.find(tunnel.name)
        log = str(session.supervisor.status(handle).log_path) if handle else ""
        table.add_row(f"{tunnel.namespace}/{tunnel.service}", forwards.url(tunnel) or "-", log)
    console.print(table)
    console.print(f"  Kubeconfig: export KUBECONFIG={session.kubeconfig_path}")
    if flags.profile == PROFILE_GITOPS:
        console.print("  GitLab    : http://localhost/ (user root)")
        console.print("  Argo CD   : http://localhost/argocd")


def _hold_tunnels(session: Session) -> None:
    """Block until the session is cancelled, reporting tunnel restarts."""
    console.print("[yellow]\u2139\ufe0f  Tunnels are running. Press Ctrl+C to stop them.[/yellow]")
    restarts: dict[str, int] = {}
    while not session.cancel_event.wait(1.0):
        for handle in session.supervisor.handles():
            status = session.supervisor.status(handle)
            if status.restart_count > restarts.get(handle.name, 0):
                logger.info("%s restarted (%d so far)", handle.name, status.restart_count)
                restarts[handle.name] = status.restart_count


def run_deploy(flags: ActionFlags, cfg: DevEnvConfig, hold: bool = True) -> ExitCode:
    """Provision the environment, then keep the tunnels alive.

    Infrastructure runs as one pipeline, the application as a second one,
    with the optional operator pause in between. Every step is probed
    first, so re-running against a partially provisioned cluster only
    applies what is missing.

    Args:
        flags: Resolved action flags.
        cfg: Resolved configuration.
        hold: Whether to block on the tunnels after provisioning.

    Returns:
        SUCCESS, PARTIAL when a tunnel never answered its local probe, or
        FATAL when a provisioning step failed.

    Raises:
        PreconditionFailed: If a required CLI tool is missing.
        SessionLocked: If another session holds the cluster's lock.
    """
    _run_prerequisites(flags)
    display_config(flags, cfg)

    with Session(cfg) as session, _cancel_on_signals(session):
        forwards = ForwardSet(session)
        argocd, application = default_tunnels(session, flags.profile)
        tunnels: tuple[Tunnel, ...] = (argocd, application) if flags.start_forwards else ()

        console.print(Panel.fit("Provisioning infrastructure", style="bold blue"))
        steps = infrastructure_steps(session, flags)
        if flags.start_forwards:
            steps.append(forwards.step(argocd, depends_on=(steps[-1].name,)))
        result = run_pipeline(steps, session.registry, session.cancel_event)
        if not result.ok:
            _report_failure(result)
            return ExitCode.FATAL

        _print_argocd_access(session, forwards, argocd)
        if flags.pause_before_app and not session.cancelled:
            typer.pause("Log into Argo CD and sync, then press any key to deploy the application...")

        console.print(Panel.fit("Deploying application", style="bold blue"))
        steps = application_steps(session, flags)
        if flags.start_forwards:
            steps.append(forwards.step(application, depends_on=(steps[-1].name,)))
        result = run_pipeline(steps, session.registry, session.cancel_event)
        if not result.ok:
            _report_failure(result)
            return ExitCode.FATAL

        code = ExitCode.SUCCESS
        for tunnel in tunnels:
            if not forwards.probe(tunnel):
                console.print(
                    f"[yellow]\u26a0\ufe0f  {tunnel.service} did not answer on "
                    f"{forwards.url(tunnel)}; see its log for details[/yellow]"
                )
                code = ExitCode.PARTIAL

        if flags.profile == PROFILE_GITOPS:
            password = gitlab_root_password(session)
            console.print(f"  GitLab root password: {password or '(not available yet)'}")

        _print_summary(session, flags, forwards, tunnels)
        console.print("[green]\u2705 Environment is ready[/green]")

        if hold and tunnels and not session.cancelled:
            _hold_tunnels(session)
        forwards.release()
        return code


# ============================================================================
# Teardown
# ============================================================================

def _take_over_lock(session: Session) -> None:
    """Acquire the session lock, asking a running deploy to stop first.

    Raises:
        SessionLocked: If the holder does not release the lock in time.
    """
    try:
        session.acquire_lock()
        return
    except SessionLocked:
        holder = session.lock_holder()
        if holder is None or holder == os.getpid():
            raise
        console.print(f"[yellow]\u26a0\ufe0f  Stopping the active session (pid {holder})...[/yellow]")
        try:
            os.kill(holder, signal.SIGTERM)
        except ProcessLookupError:
            pass

    def _lock_free() -> ReadinessState:
        try:
            session.acquire_lock()
        except SessionLocked:
            return ReadinessState.NOT_YET
        return ReadinessState.READY

    check = ReadinessCheck(
        predicate=_lock_free,
        interval=0.5,
        timeout=SESSION_LOCK_WAIT_SECONDS,
        description="session lock",
    )
    if wait(check, session.cancel_event) is not WaitOutcome.READY:
        raise SessionLocked(f"The active session for '{session.cluster_name}' did not stop in time")


def _confirm_destroy(cluster_name: str) -> bool:
    if not sys.stdin.isatty():
        return False
    return typer.confirm(f"Also delete the k3d cluster '{cluster_name}'?", default=False)


def run_teardown(
    cfg: DevEnvConfig,
    destroy_cluster: bool | None = None,
    purge_docker: bool = False,
) -> ExitCode:
    """Remove every recorded resource in dependency order.

    Falls back to label-based discovery when the registry is empty. Every
    resource is attempted even if earlier ones fail; the summary table lists
    each outcome.

    Args:
        cfg: Resolved configuration.
        destroy_cluster: Whether to delete the cluster itself. Asks
            interactively when None and stdin is a terminal.
        purge_docker: Also remove every Docker container, image, volume and
            custom network on the host.

    Returns:
        FATAL only if a requested cluster deletion failed, SUCCESS otherwise.
    """
    console.print(Panel.fit(f"Tearing down '{cfg.cluster.cluster_name}'", style="bold blue"))
    session = Session(cfg)
    try:
        _take_over_lock(session)

        resources = session.registry.snapshot()
        discovered = False
        if not resources or purge_docker:
            if not resources:
                console.print("[yellow]\u2139\ufe0f  No recorded resources, discovering by label...[/yellow]")
            found = discover_resources(session, purge_docker=purge_docker)
            known = {r.key for r in resources}
            resources.extend(r for r in found if r.key not in known)
            discovered = True

        has_cluster = any(r.kind is ResourceKind.CLUSTER for r in resources)
        if has_cluster and session.runtime.kubeconfig is None:
            try:
                session.runtime.write_kubeconfig(session.cluster_name, session.kubeconfig_path)
            except (sh.ErrorReturnCode, sh.CommandNotFound) as err:
                logger.warning("Could not write kubeconfig: %s", err)

        if destroy_cluster is None:
            destroy_cluster = has_cluster and _confirm_destroy(session.cluster_name)

        report = teardown(
            resources,
            Cleanup(session).removers(),
            destroy_cluster=destroy_cluster,
            registry=session.registry,
            discovered=discovered,
        )
        console.print(render_report(report))

        if report.failures:
            console.print(f"[yellow]\u26a0\ufe0f  {len(report.failures)} resource(s) could not be removed[/yellow]")
        else:
            console.print("[green]\u2705 Teardown complete[/green]")
        if not report.retained and not len(session.registry):
            shutil.rmtree(session.log_dir, ignore_errors=True)
        return ExitCode.FATAL if report.cluster_failed else ExitCode.SUCCESS
    finally:
        session.close()


# ============================================================================
# Status
# ============================================================================

def show_status(cfg: DevEnvConfig) -> None:
    """Print the cluster state, recorded resources and tunnel logs."""
    session = Session(cfg)
    try:
        console.print(Panel.fit(f"Session '{session.cluster_name}'", style="bold blue"))
        try:
            exists = session.runtime.cluster_exists(session.cluster_name)
            console.print(f"  Cluster    : {'[green]running[/green]' if exists else '[yellow]absent[/yellow]'}")
        except (sh.ErrorReturnCode, sh.CommandNotFound) as err:
            console.print(f"  Cluster    : [red]unknown[/red] ({escape(str(err))})")
        holder = None
        try:
            session.acquire_lock()
        except SessionLocked:
            holder = session.lock_holder() or "unknown"
        finally:
            session.release_lock()
        console.print(f"  Active pid : {holder or '-'}")
        console.print(f"  State dir  : {session.state_dir}")

        table = Table(title="Recorded resources")
        table.add_column("#", justify="right")
        table.add_column("Kind", style="cyan")
        table.add_column("Resource")
        table.add_column("Details", style="dim")
        for resource in session.registry.snapshot():
            target = resource.identifier
            if resource.namespace:
                target = f"{resource.namespace}/{target}"
            details = ", ".join(f"{k}={v}" for k, v in sorted(resource.attributes.items()))
            table.add_row(str(resource.creation_order), resource.kind.value, target, escape(details))
        console.print(table)

        if session.log_dir.is_dir():
            console.print("[yellow]Tunnel logs:[/yellow]")
            for log in sorted(session.log_dir.glob("*.log")):
                console.print(f"  {log}")
    finally:
        session.containers.close()
