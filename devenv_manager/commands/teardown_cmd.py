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

"""The ``teardown`` command."""

from __future__ import annotations

from pathlib import Path

import typer

from devenv_manager.config import resolve_session_config
from devenv_manager.orchestrator import run_teardown


def teardown(
    destroy_cluster: bool | None = typer.Option(
        None, "--destroy-cluster/--keep-cluster",
        help="Also delete the k3d cluster (asks when omitted and interactive)"),
    purge_docker: bool = typer.Option(
        False, "--purge-docker",
        help="Also remove every Docker container, image, volume and custom network"),
    cluster_name: str | None = typer.Option(
        None, "--cluster-name", help="k3d cluster name (overrides DEVENV_CLUSTER_NAME)"),
    state_dir: Path | None = typer.Option(
        None, "--state-dir", help="Directory for registry, kubeconfig and logs"),
) -> None:
    """Remove everything a deploy created, tunnels first and the cluster last.

    Every resource is attempted even when others fail. Exits 2 only if
    deleting the cluster was requested and failed.
    """
    if purge_docker:
        typer.confirm("Remove ALL Docker containers, images, volumes and networks on this host?", abort=True)
    cfg = resolve_session_config(cluster_name=cluster_name, state_dir=state_dir)
    code = run_teardown(cfg, destroy_cluster=destroy_cluster, purge_docker=purge_docker)
    raise typer.Exit(int(code))
