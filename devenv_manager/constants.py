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

"""Constants, component catalogue loading, and dep_value helper."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

# -- Resolved paths --
PACKAGE_DIR = Path(__file__).resolve().parent


def load_components() -> dict:
    """Load chart repositories and upstream manifests from components.yaml.

    Returns:
        Parsed YAML content as a nested dictionary.
    """
    components_file = PACKAGE_DIR / "components.yaml"
    with open(components_file) as f:
        return yaml.safe_load(f)


COMPONENTS = load_components()


def dep_value(*keys: str, default: Any = None) -> Any:
    """Safely traverse the COMPONENTS dict by key path.

    Args:
        *keys: Sequence of dictionary keys to traverse.
        default: Value to return if any key is missing.

    Returns:
        The value at the nested key path, or *default* if not found.
    """
    node = COMPONENTS
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


# -- Labels --
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "devenv-manager"
MANAGED_BY_SELECTOR = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"
DOCKER_CLUSTER_LABEL = "devenv-manager.cluster"
ARGOCD_SERVER_SELECTOR = "app.kubernetes.io/name=argocd-server"

# -- Docker networks that are never removed --
PROTECTED_NETWORKS = ("bridge", "host", "none")

# -- Process matching --
PORT_FORWARD_PATTERN = "kubectl port-forward"

# -- Timing --
CLUSTER_CREATE_RETRY_WAIT_SECONDS = 10
PROCESS_TERMINATE_GRACE_SECONDS = 5
FORWARD_PROBE_TIMEOUT_SECONDS = 10
FORWARD_PROBE_INTERVAL_SECONDS = 1
GITLAB_PASSWORD_TIMEOUT_SECONDS = 300
COMMAND_TIMEOUT_SECONDS = 60
SESSION_LOCK_WAIT_SECONDS = 15

# -- State directory layout --
REGISTRY_FILE = "registry.yaml"
LOCK_FILE = "session.lock"
KUBECONFIG_FILE = "kubeconfig.yaml"
LOGS_DIR = "logs"

# -- Namespaces --
NS_ARGOCD = "argocd"
NS_APP = "dev"
NS_INGRESS_NGINX = "ingress-nginx"
NS_GITLAB = "gitlab"

# -- Ingresses --
INGRESS_GITLAB = "gitlab-hostless"
INGRESS_ARGOCD = "argocd-hostless"
INGRESS_CLASS = "nginx"

# -- Deploy profiles --
PROFILE_BASIC = "basic"
PROFILE_GITOPS = "gitops"
PROFILES = (PROFILE_BASIC, PROFILE_GITOPS)

# -- Cluster defaults --
DEFAULT_CLUSTER_NAME = "devenv-cluster"
DEFAULT_K3D_CONFIG = "k3d-cluster.yaml"
DEFAULT_AGENTS = 1
DEFAULT_API_PORT = 6550
DEFAULT_LB_PORT = "8081:80"
DEFAULT_CLUSTER_CREATE_MAX_RETRIES = 3

# -- Application defaults --
DEFAULT_APP_MANIFEST = "manifests/application.yaml"
DEFAULT_APP_SERVICE = "app"
DEFAULT_APP_REMOTE_PORT = 8888
DEFAULT_APP_LOCAL_PORT = 9999
DEFAULT_ARGOCD_SERVICE = "argocd-server"
DEFAULT_ARGOCD_REMOTE_PORT = 443
DEFAULT_ARGOCD_GITOPS_REMOTE_PORT = 80
DEFAULT_ARGOCD_LOCAL_PORT = 8080
DEFAULT_FORWARD_ADDRESS = "127.0.0.1"
DEFAULT_APP_IMAGE = "devenv-app:latest"

# -- Session defaults --
DEFAULT_STATE_DIR = ".devenv"
DEFAULT_RESTART_COOLDOWN_SECONDS = 3.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_WAIT_TIMEOUT_SECONDS = 600.0
DEFAULT_ROLLOUT_TIMEOUT_SECONDS = 1200.0
