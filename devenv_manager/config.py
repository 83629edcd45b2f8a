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

"""Configuration classes, ActionFlags, and config resolution/display."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.panel import Panel

from devenv_manager import console, logger
from devenv_manager.constants import (
    DEFAULT_AGENTS,
    DEFAULT_API_PORT,
    DEFAULT_APP_IMAGE,
    DEFAULT_APP_LOCAL_PORT,
    DEFAULT_APP_MANIFEST,
    DEFAULT_APP_REMOTE_PORT,
    DEFAULT_APP_SERVICE,
    DEFAULT_ARGOCD_GITOPS_REMOTE_PORT,
    DEFAULT_ARGOCD_LOCAL_PORT,
    DEFAULT_ARGOCD_REMOTE_PORT,
    DEFAULT_ARGOCD_SERVICE,
    DEFAULT_CLUSTER_CREATE_MAX_RETRIES,
    DEFAULT_CLUSTER_NAME,
    DEFAULT_FORWARD_ADDRESS,
    DEFAULT_K3D_CONFIG,
    DEFAULT_LB_PORT,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_RESTART_COOLDOWN_SECONDS,
    DEFAULT_ROLLOUT_TIMEOUT_SECONDS,
    DEFAULT_STATE_DIR,
    DEFAULT_WAIT_TIMEOUT_SECONDS,
    NS_APP,
    NS_ARGOCD,
    NS_GITLAB,
    NS_INGRESS_NGINX,
    PROFILE_GITOPS,
    PROFILES,
)


# ============================================================================
# Configuration classes
# ============================================================================

class ClusterConfig(BaseSettings):
    """k3d cluster configuration, auto-loaded from DEVENV_* env vars.

    Attributes:
        cluster_name: Name of the k3d cluster.
        k3d_config: k3d config file. Used when it exists, otherwise the
            cluster is created from the individual settings below.
        agents: Number of agent nodes.
        api_port: Kubernetes API server port.
        lb_port: Load balancer port mapping (host:container).
        max_retries: Maximum cluster creation retry attempts.
    """

    model_config = SettingsConfigDict(env_prefix="DEVENV_", extra="ignore")

    cluster_name: str = Field(default=DEFAULT_CLUSTER_NAME, pattern=r"^[a-z0-9][a-z0-9-]*$")
    k3d_config: Path = Path(DEFAULT_K3D_CONFIG)
    agents: int = Field(default=DEFAULT_AGENTS, ge=0, le=20)
    api_port: int = Field(default=DEFAULT_API_PORT, ge=1, le=65535)
    lb_port: str = DEFAULT_LB_PORT
    max_retries: int = Field(default=DEFAULT_CLUSTER_CREATE_MAX_RETRIES, ge=1, le=10)


class AppConfig(BaseSettings):
    """Application, Argo CD and forwarding settings, auto-loaded from DEVENV_* env vars.

    Attributes:
        argocd_namespace: Namespace for Argo CD.
        app_namespace: Namespace the application manifest deploys into.
        app_manifest: Path of the application manifest.
        app_service: Service exposed through the application tunnel.
        app_remote_port: Service port of the application.
        app_local_port: Preferred local port for the application tunnel.
        argocd_service: Argo CD server Service.
        argocd_remote_port: Argo CD server port, or None for the profile default.
        argocd_local_port: Preferred local port for the Argo CD tunnel.
        forward_address: Address the tunnels listen on.
        app_image: Tag of the application image built with --build-image.
        app_build_context: Docker build context for the application image.
    """

    model_config = SettingsConfigDict(env_prefix="DEVENV_", extra="ignore")

    argocd_namespace: str = NS_ARGOCD
    app_namespace: str = NS_APP
    app_manifest: Path = Path(DEFAULT_APP_MANIFEST)
    app_service: str = DEFAULT_APP_SERVICE
    app_remote_port: int = Field(default=DEFAULT_APP_REMOTE_PORT, ge=1, le=65535)
    app_local_port: int = Field(default=DEFAULT_APP_LOCAL_PORT, ge=1, le=65535)
    argocd_service: str = DEFAULT_ARGOCD_SERVICE
    argocd_remote_port: int | None = Field(default=None, ge=1, le=65535)
    argocd_local_port: int = Field(default=DEFAULT_ARGOCD_LOCAL_PORT, ge=1, le=65535)
    forward_address: str = DEFAULT_FORWARD_ADDRESS
    app_image: str = DEFAULT_APP_IMAGE
    app_build_context: Path | None = None

    def argocd_port_for(self, profile: str) -> int:
        """Argo CD serves plain HTTP behind ingress in the gitops profile."""
        if self.argocd_remote_port is not None:
            return self.argocd_remote_port
        return DEFAULT_ARGOCD_GITOPS_REMOTE_PORT if profile == PROFILE_GITOPS else DEFAULT_ARGOCD_REMOTE_PORT


class GitOpsConfig(BaseSettings):
    """Helm-based GitOps stack settings, auto-loaded from DEVENV_* env vars.

    Attributes:
        ingress_nginx_namespace: Namespace for ingress-nginx.
        gitlab_namespace: Namespace for GitLab.
        ingress_values: Extra values file for ingress-nginx, or None.
        gitlab_values: Extra values file for GitLab, or None.
        argocd_chart_version: Argo CD chart version, or None for latest.
        gitlab_chart_version: GitLab chart version, or None for latest.
        argocd_application: Argo CD Application manifest pointing at GitLab, or None.
    """

    model_config = SettingsConfigDict(env_prefix="DEVENV_", extra="ignore")

    ingress_nginx_namespace: str = NS_INGRESS_NGINX
    gitlab_namespace: str = NS_GITLAB
    ingress_values: Path | None = None
    gitlab_values: Path | None = None
    argocd_chart_version: str | None = None
    gitlab_chart_version: str | None = None
    argocd_application: Path | None = None


class SessionConfig(BaseSettings):
    """Session timing and state location, auto-loaded from DEVENV_* env vars.

    Attributes:
        state_dir: Root directory for registries, kubeconfigs and logs.
        restart_cooldown: Seconds between a tunnel exit and its relaunch.
        poll_interval: Seconds between readiness polls.
        wait_timeout: Bound on pod and Service readiness waits.
        rollout_timeout: Bound on Helm deployment rollout waits.
    """

    model_config = SettingsConfigDict(env_prefix="DEVENV_", extra="ignore")

    state_dir: Path = Path(DEFAULT_STATE_DIR)
    restart_cooldown: float = Field(default=DEFAULT_RESTART_COOLDOWN_SECONDS, ge=0)
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL_SECONDS, gt=0)
    wait_timeout: float = Field(default=DEFAULT_WAIT_TIMEOUT_SECONDS, gt=0)
    rollout_timeout: float = Field(default=DEFAULT_ROLLOUT_TIMEOUT_SECONDS, gt=0)


@dataclass(frozen=True)
class DevEnvConfig:
    """The four resolved configuration objects, passed around together."""

    cluster: ClusterConfig
    app: AppConfig
    gitops: GitOpsConfig
    session: SessionConfig


# ============================================================================
# Action flags
# ============================================================================

@dataclass(frozen=True)
class ActionFlags:
    """Single source of truth for what a deploy run does.

    Attributes:
        profile: Deploy profile, ``basic`` or ``gitops``.
        create_cluster: Whether the cluster step may create the cluster.
        build_image: Whether to build and import the application image.
        pause_before_app: Whether to wait for the operator before the
            application phase.
        start_forwards: Whether to start the port-forward tunnels.
    """

    profile: str
    create_cluster: bool
    build_image: bool
    pause_before_app: bool
    start_forwards: bool


# ============================================================================
# Config resolution
# ============================================================================

def validate_flags(
    profile: str,
    skip_cluster_creation: bool,
    build_image: bool,
    build_context: Path | None,
    no_forwards: bool,
    pause_before_app: bool,
) -> None:
    """Validate flag combinations for consistency.

    Args:
        profile: Requested deploy profile.
        skip_cluster_creation: Whether cluster creation is skipped.
        build_image: Whether the application image should be built.
        build_context: Docker build context from the CLI, or None.
        no_forwards: Whether tunnels are disabled.
        pause_before_app: Whether to pause before the application phase.

    Raises:
        typer.BadParameter: If the profile is unknown or the image build has
            no context to build from.
    """
    if profile not in PROFILES:
        raise typer.BadParameter(f"--profile must be one of {', '.join(PROFILES)}, got '{profile}'")

    if build_image and build_context is None and AppConfig().app_build_context is None:
        raise typer.BadParameter("--build-image needs --build-context (or DEVENV_APP_BUILD_CONTEXT)")

    if skip_cluster_creation and build_image:
        logger.warning("--skip-cluster-creation is set; the image is imported into the existing cluster")

    if no_forwards and pause_before_app:
        logger.warning("--pause-before-app without tunnels: open Argo CD through your own port-forward")


def _override(model: Any, **values: Any) -> Any:
    """Return *model* with every non-None value applied (CLI > env > default)."""
    updates = {key: value for key, value in values.items() if value is not None}
    return model.model_copy(update=updates) if updates else model


def resolve_config(
    *,
    profile: str = "basic",
    skip_cluster_creation: bool = False,
    build_image: bool = False,
    pause_before_app: bool = False,
    no_forwards: bool = False,
    cluster_name: str | None = None,
    k3d_config: Path | None = None,
    state_dir: Path | None = None,
    app_manifest: Path | None = None,
    app_namespace: str | None = None,
    argocd_namespace: str | None = None,
    service: str | None = None,
    service_port: int | None = None,
    local_port: int | None = None,
    argocd_local_port: int | None = None,
    address: str | None = None,
    build_context: Path | None = None,
) -> tuple[DevEnvConfig, ActionFlags]:
    """Merge CLI overrides, environment variables, and defaults into config objects.

    Resolution priority: CLI arguments > DEVENV_* environment variables > defaults.

    Returns:
        Tuple of (DevEnvConfig, ActionFlags).
    """
    cluster_cfg = _override(ClusterConfig(), cluster_name=cluster_name, k3d_config=k3d_config)
    app_cfg = _override(
        AppConfig(),
        app_manifest=app_manifest,
        app_namespace=app_namespace,
        argocd_namespace=argocd_namespace,
        app_service=service,
        app_remote_port=service_port,
        app_local_port=local_port,
        argocd_local_port=argocd_local_port,
        forward_address=address,
        app_build_context=build_context,
    )
    session_cfg = _override(SessionConfig(), state_dir=state_dir)

    flags = ActionFlags(
        profile=profile,
        create_cluster=not skip_cluster_creation,
        build_image=build_image,
        pause_before_app=pause_before_app,
        start_forwards=not no_forwards,
    )
    return DevEnvConfig(cluster_cfg, app_cfg, GitOpsConfig(), session_cfg), flags


def resolve_session_config(
    cluster_name: str | None = None,
    state_dir: Path | None = None,
) -> DevEnvConfig:
    """Resolve the config used by ``teardown`` and ``status``."""
    return DevEnvConfig(
        _override(ClusterConfig(), cluster_name=cluster_name),
        AppConfig(),
        GitOpsConfig(),
        _override(SessionConfig(), state_dir=state_dir),
    )


# ============================================================================
# Display
# ============================================================================

def display_config(flags: ActionFlags, cfg: DevEnvConfig) -> None:
    """Print only config relevant to requested actions.

    Args:
        flags: Resolved action flags controlling what to display.
        cfg: Resolved configuration.
    """
    console.print(Panel.fit("Configuration", style="bold blue"))

    console.print("[yellow]k3d cluster:[/yellow]")
    console.print(f"  cluster_name      : {cfg.cluster.cluster_name}")
    if flags.create_cluster:
        console.print(f"  k3d_config        : {cfg.cluster.k3d_config}")
        console.print(f"  agents            : {cfg.cluster.agents}")

    console.print("[yellow]Application:[/yellow]")
    console.print(f"  profile           : {flags.profile}")
    console.print(f"  argocd_namespace  : {cfg.app.argocd_namespace}")
    console.print(f"  app_namespace     : {cfg.app.app_namespace}")
    console.print(f"  app_manifest      : {cfg.app.app_manifest}")
    if flags.build_image:
        console.print(f"  app_image         : {cfg.app.app_image}")
        console.print(f"  build_context     : {cfg.app.app_build_context}")

    if flags.profile == PROFILE_GITOPS:
        console.print("[yellow]GitOps stack:[/yellow]")
        console.print(f"  ingress namespace : {cfg.gitops.ingress_nginx_namespace}")
        console.print(f"  gitlab namespace  : {cfg.gitops.gitlab_namespace}")
        console.print(f"  argocd_application: {cfg.gitops.argocd_application or '(none)'}")

    if flags.start_forwards:
        console.print("[yellow]Tunnels:[/yellow]")
        console.print(
            f"  {cfg.app.argocd_service:<18}: {cfg.app.argocd_port_for(flags.profile)} -> "
            f"{cfg.app.forward_address}:{cfg.app.argocd_local_port}+"
        )
        console.print(
            f"  {cfg.app.app_service:<18}: {cfg.app.app_remote_port} -> "
            f"{cfg.app.forward_address}:{cfg.app.app_local_port}+"
        )

    console.print("[yellow]Session:[/yellow]")
    console.print(f"  state_dir         : {cfg.session.state_dir}")
    console.print(f"  restart_cooldown  : {cfg.session.restart_cooldown}s")
