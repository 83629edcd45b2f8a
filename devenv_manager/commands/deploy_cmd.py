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

"""The ``deploy`` command."""

from __future__ import annotations

from pathlib import Path

import typer

from devenv_manager.config import resolve_config, validate_flags
from devenv_manager.constants import PROFILE_BASIC
from devenv_manager.orchestrator import run_deploy


def deploy(
    profile: str = typer.Option(
        PROFILE_BASIC, "--profile", help="basic (Argo CD + app) or gitops (adds ingress-nginx and GitLab)"),
    skip_cluster_creation: bool = typer.Option(
        False, "--skip-cluster-creation", help="Fail instead of creating a missing cluster"),
    build_image: bool = typer.Option(
        False, "--build-image", help="Build the application image and import it into k3d"),
    build_context: Path | None = typer.Option(
        None, "--build-context", help="Docker build context for --build-image"),
    pause_before_app: bool = typer.Option(
        False, "--pause-before-app", help="Wait for a key press before deploying the application"),
    no_forwards: bool = typer.Option(
        False, "--no-forwards", help="Do not start port-forward tunnels"),
    detach: bool = typer.Option(
        False, "--detach", help="Exit after provisioning instead of holding the tunnels"),
    cluster_name: str | None = typer.Option(
        None, "--cluster-name", help="k3d cluster name (overrides DEVENV_CLUSTER_NAME)"),
    k3d_config: Path | None = typer.Option(
        None, "--k3d-config", help="k3d cluster config file"),
    state_dir: Path | None = typer.Option(
        None, "--state-dir", help="Directory for registry, kubeconfig and logs"),
    app_manifest: Path | None = typer.Option(
        None, "--app-manifest", help="Application manifest to apply"),
    app_namespace: str | None = typer.Option(
        None, "--app-namespace", help="Application namespace"),
    argocd_namespace: str | None = typer.Option(
        None, "--argocd-namespace", help="Argo CD namespace"),
    service: str | None = typer.Option(
        None, "--service", help="Application Service to forward"),
    service_port: int | None = typer.Option(
        None, "--service-port", help="Application Service port"),
    local_port: int | None = typer.Option(
        None, "--local-port", help="Preferred local port for the application"),
    argocd_local_port: int | None = typer.Option(
        None, "--argocd-local-port", help="Preferred local port for Argo CD"),
    address: str | None = typer.Option(
        None, "--address", help="Address the tunnels listen on"),
) -> None:
    """Provision the cluster, Argo CD and the application, then forward their ports.

    Re-running against an existing environment only applies what is missing.
    Exits 0 on success, 1 if a tunnel never answered, 2 if a step failed.
    """
    validate_flags(profile, skip_cluster_creation, build_image, build_context, no_forwards, pause_before_app)
    cfg, flags = resolve_config(
        profile=profile,
        skip_cluster_creation=skip_cluster_creation,
        build_image=build_image,
        pause_before_app=pause_before_app,
        no_forwards=no_forwards,
        cluster_name=cluster_name,
        k3d_config=k3d_config,
        state_dir=state_dir,
        app_manifest=app_manifest,
        app_namespace=app_namespace,
        argocd_namespace=argocd_namespace,
        service=service,
        service_port=service_port,
        local_port=local_port,
        argocd_local_port=argocd_local_port,
        address=address,
        build_context=build_context,
    )
    code = run_deploy(flags, cfg, hold=not detach)
    raise typer.Exit(int(code))
