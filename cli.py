#!/usr/bin/env python3
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

"""
cli.py - Provision and tear down local k3d development environments.

Commands:
    deploy     Create the cluster, Argo CD (and optionally GitLab) and the app,
               then hold supervised port-forward tunnels open
    teardown   Remove recorded resources in dependency order
    status     Show the recorded resources and tunnel logs

Examples:
    # Basic profile, tunnels held until Ctrl+C
    ./cli.py deploy

    # GitOps profile with ingress-nginx and GitLab
    ./cli.py deploy --profile gitops

    # Remove everything, including the cluster
    ./cli.py teardown --destroy-cluster

For detailed usage information, run: ./cli.py --help
"""

from __future__ import annotations

import logging
import sys

import typer

from devenv_manager import console
from devenv_manager.commands import deploy_cmd, status_cmd, teardown_cmd
from devenv_manager.errors import DevEnvError

app = typer.Typer(
    help="Provision and tear down local k3d development environments.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Initialize logging for all subcommands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


app.command("deploy")(deploy_cmd.deploy)
app.command("teardown")(teardown_cmd.teardown)
app.command("status")(status_cmd.status)


def main() -> None:
    try:
        app()
    except DevEnvError as e:
        console.print(f"[red]\u274c {e}[/red]")
        sys.exit(2)
    except Exception as e:
        console.print(f"[red]\u274c {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
