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

"""Provisioning steps for the cluster, Argo CD, the GitOps stack and the application."""

from __future__ import annotations

from pathlib import Path

import sh
import yaml

from devenv_manager import console, logger
from devenv_manager.config import ActionFlags
from devenv_manager.constants import (
    ARGOCD_SERVER_SELECTOR,
    DOCKER_CLUSTER_LABEL,
    GITLAB_PASSWORD_TIMEOUT_SECONDS,
    INGRESS_ARGOCD,
    INGRESS_CLASS,
    INGRESS_GITLAB,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    PROFILE_GITOPS,
    dep_value,
)
from devenv_manager.errors import PreconditionFailed
from devenv_manager.pipeline import ProvisioningStep, RecordFn
from devenv_manager.poller import ReadinessCheck, ReadinessState, WaitOutcome, wait
from devenv_manager.registry import ResourceKind
from devenv_manager.runtime import RolloutStatus
from devenv_manager.session import Session
from devenv_manager.utils import query_state

MANAGED_LABELS = {MANAGED_BY_LABEL: MANAGED_BY_VALUE}


# ============================================================================
# Readiness checks
# ============================================================================

def pod_running_check(session: Session, selector: str, namespace: str) -> ReadinessCheck:
    """Wait for the first pod matching *selector* to reach phase Running."""

    def _predicate() -> ReadinessState:
        try:
            phase = session.runtime.pod_phase(selector, namespace)
        except sh.ErrorReturnCode as err:
            logger.debug("Pod query failed: %s", err)
            return ReadinessState.NOT_YET
        return ReadinessState.READY if phase == "Running" else ReadinessState.NOT_YET

    return ReadinessCheck(
        predicate=_predicate,
        interval=session.cfg.session.poll_interval,
        timeout=session.cfg.session.wait_timeout,
        description=f"pod '{selector}' in '{namespace}' to be Running",
    )


def rollout_check(session: Session, deployment: str, namespace: str) -> ReadinessCheck:
    """Wait for a deployment rollout; a deadline-exceeded rollout fails the wait."""

    def _predicate() -> ReadinessState:
        try:
            status = session.runtime.rollout_status(deployment, namespace)
        except sh.ErrorReturnCode as err:
            logger.debug("Rollout query failed: %s", err)
            return ReadinessState.NOT_YET
        if status is RolloutStatus.COMPLETE:
            return ReadinessState.READY
        if status is RolloutStatus.FAILED:
            return ReadinessState.FAILED
        return ReadinessState.NOT_YET

    return ReadinessCheck(
        predicate=_predicate,
        interval=session.cfg.session.poll_interval,
        timeout=session.cfg.session.rollout_timeout,
        description=f"deployment '{namespace}/{deployment}' rollout",
    )


def service_check(session: Session, service: str, namespace: str) -> ReadinessCheck:
    return ReadinessCheck(
        predicate=query_state(
            lambda: session.runtime.service_exists(service, namespace), f"service {service}"
        ),
        interval=session.cfg.session.poll_interval,
        timeout=session.cfg.session.wait_timeout,
        description=f"service '{namespace}/{service}'",
    )


# ============================================================================
# Cluster
# ============================================================================

def cluster_step(session: Session, flags: ActionFlags) -> ProvisioningStep:
    cluster_cfg = session.cfg.cluster
    name = session.cluster_name

    def _apply(record: RecordFn) -> None:
        if not flags.create_cluster:
            raise PreconditionFailed(
                f"Cluster '{name}' does not exist and --skip-cluster-creation was given"
            )
        session.runtime.create_cluster(
            name,
            config_file=cluster_cfg.k3d_config,
            agents=cluster_cfg.agents,
            api_port=cluster_cfg.api_port,
            lb_port=cluster_cfg.lb_port,
            max_retries=cluster_cfg.max_retries,
        )
        record(ResourceKind.CLUSTER, name)

    return ProvisioningStep(
        name="cluster",
        probe=lambda: session.runtime.cluster_exists(name),
        apply=_apply,
    )


def kubeconfig_step(session: Session) -> ProvisioningStep:
    """Write a session-local kubeconfig and confirm the API server answers."""
    name = session.cluster_name
    path = session.kubeconfig_path

    def _probe() -> bool:
        return (
            path.exists()
            and session.runtime.kubeconfig == path
            and session.runtime.cluster_reachable()
        )

    def _apply(record: RecordFn) -> None:
        session.runtime.write_kubeconfig(name, path)
        if not session.runtime.cluster_reachable():
            raise PreconditionFailed(f"Cannot access cluster '{name}' with {path}")
        console.print(f"[green]  \u2713 KUBECONFIG written to {path}[/green]")

    return ProvisioningStep(
        name="kubeconfig",
        probe=_probe,
        apply=_apply,
        depends_on=("cluster",),
    )


def namespace_step(session: Session, namespace: str, depends_on: tuple[str, ...] = ("kubeconfig",)) -> ProvisioningStep:
    def _apply(record: RecordFn) -> None:
        session.runtime.ensure_namespace(namespace, MANAGED_LABELS)
        record(ResourceKind.NAMESPACE, namespace)

    return ProvisioningStep(
        name=f"namespace/{namespace}",
        probe=lambda: session.runtime.namespace_exists(namespace),
        apply=_apply,
        depends_on=depends_on,
    )


# ============================================================================
# Argo CD from the upstream install manifest (basic profile)
# ============================================================================

def argocd_manifest_step(session: Session) -> ProvisioningStep:
    namespace = session.cfg.app.argocd_namespace
    manifest = dep_value("argocd", "install_manifest")
    server = dep_value("argocd", "server_deployment", default="argocd-server")

    def _apply(record: RecordFn) -> None:
        # Recorded first: a multi-object apply can fail after creating some objects.
        record(ResourceKind.MANIFEST, manifest, namespace=namespace, attributes={"source": manifest})
        session.runtime.apply_manifest(manifest, namespace=namespace)

    return ProvisioningStep(
        name="argocd",
        probe=lambda: session.runtime.deployment_exists(server, namespace),
        apply=_apply,
        depends_on=(f"namespace/{namespace}",),
        readiness=lambda: pod_running_check(session, ARGOCD_SERVER_SELECTOR, namespace),
    )


# ============================================================================
# GitOps stack: ingress-nginx, GitLab, Argo CD via Helm (gitops profile)
# ============================================================================

def helm_repos_step(session: Session) -> ProvisioningStep:
    repos: dict[str, str] = dep_value("helm_repos", default={})

    def _apply(record: RecordFn) -> None:
        for name, url in repos.items():
            session.runtime.add_helm_repo(name, url)
        session.runtime.update_helm_repos()

    return ProvisioningStep(
        name="helm-repos",
        probe=lambda: set(repos) <= set(session.runtime.helm_repos()),
        apply=_apply,
    )


def release_step(
    session: Session,
    *,
    name: str,
    chart: str,
    namespace: str,
    deployment: str,
    values_files: tuple[Path, ...] = (),
    set_values: tuple[str, ...] = (),
    version: str | None = None,
) -> ProvisioningStep:
    """Install a Helm release and wait for its main deployment to roll out."""

    def _apply(record: RecordFn) -> None:
        record(ResourceKind.NAMESPACE_SCOPED_RELEASE, name, namespace=namespace)
        session.runtime.install_or_upgrade_release(
            name, chart, namespace, values_files=values_files, set_values=set_values, version=version
        )

    return ProvisioningStep(
        name=f"release/{name}",
        probe=lambda: session.runtime.release_exists(name, namespace),
        apply=_apply,
        depends_on=("helm-repos", f"namespace/{namespace}"),
        readiness=lambda: rollout_check(session, deployment, namespace),
    )


def write_gitlab_overrides(session: Session) -> Path:
    """Write the localhost/no-TLS GitLab overrides into the session state dir."""
    path = session.state_dir / "gitlab-overrides.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(dep_value("gitlab", "overrides", default={}), f, sort_keys=False)
    return path


def hostless_ingress(
    name: str, namespace: str, path: str, service: str, port: int, annotations: dict[str, str]
) -> dict:
    """Build an Ingress without a host rule, so any Host header reaches *service*."""
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(MANAGED_LABELS),
            "annotations": annotations,
        },
        "spec": {
            "ingressClassName": INGRESS_CLASS,
            "rules": [{
                "http": {
                    "paths": [{
                        "path": path,
                        "pathType": "Prefix",
                        "backend": {"service": {"name": service, "port": {"number": port}}},
                    }],
                },
            }],
        },
    }


def ingress_step(session: Session, manifest: dict, depends_on: tuple[str, ...]) -> ProvisioningStep:
    name = manifest["metadata"]["name"]
    namespace = manifest["metadata"]["namespace"]

    def _apply(record: RecordFn) -> None:
        record(ResourceKind.INGRESS_OBJECT, name, namespace=namespace)
        session.runtime.apply_object(manifest)

    return ProvisioningStep(
        name=f"ingress/{name}",
        probe=lambda: session.runtime.ingress_exists(name, namespace),
        apply=_apply,
        depends_on=depends_on,
    )


def gitops_steps(session: Session) -> list[ProvisioningStep]:
    gitops = session.cfg.gitops
    argocd_ns = session.cfg.app.argocd_namespace
    base_path = dep_value("argocd", "base_path", default="/argocd")

    ingress_values = (gitops.ingress_values,) if gitops.ingress_values else ()
    gitlab_values = tuple(v for v in (gitops.gitlab_values, write_gitlab_overrides(session)) if v)

    steps = [
        helm_repos_step(session),
        namespace_step(session, gitops.ingress_nginx_namespace),
        release_step(
            session,
            name=dep_value("ingress_nginx", "release"),
            chart=dep_value("ingress_nginx", "chart"),
            namespace=gitops.ingress_nginx_namespace,
            deployment=dep_value("ingress_nginx", "controller_deployment"),
            values_files=ingress_values,
        ),
        namespace_step(session, gitops.gitlab_namespace),
        release_step(
            session,
            name=dep_value("gitlab", "release"),
            chart=dep_value("gitlab", "chart"),
            namespace=gitops.gitlab_namespace,
            deployment=dep_value("gitlab", "webservice_deployment"),
            values_files=gitlab_values,
            version=gitops.gitlab_chart_version,
        ),
        namespace_step(session, argocd_ns),
        release_step(
            session,
            name=dep_value("argocd", "release"),
            chart=dep_value("argocd", "chart"),
            namespace=argocd_ns,
            deployment=dep_value("argocd", "server_deployment"),
            set_values=(
                "installCRDs=true",
                "server.extraArgs[0]=--insecure",
                f"server.extraArgs[1]=--basehref={base_path}",
                f"server.extraArgs[2]=--rootpath={base_path}",
            ),
            version=gitops.argocd_chart_version,
        ),
        ingress_step(
            session,
            hostless_ingress(
                INGRESS_GITLAB,
                gitops.gitlab_namespace,
                "/",
                dep_value("gitlab", "webservice_deployment"),
                dep_value("gitlab", "webservice_port"),
                {
                    "nginx.ingress.kubernetes.io/proxy-body-size": "0",
                    "nginx.ingress.kubernetes.io/upstream-vhost": "localhost",
                    "nginx.ingress.kubernetes.io/force-ssl-redirect": "false",
                },
            ),
            depends_on=(f"release/{dep_value('gitlab', 'release')}",),
        ),
        ingress_step(
            session,
            hostless_ingress(
                INGRESS_ARGOCD,
                argocd_ns,
                base_path,
                session.cfg.app.argocd_service,
                session.cfg.app.argocd_port_for(PROFILE_GITOPS),
                {"nginx.ingress.kubernetes.io/rewrite-target": "/"},
            ),
            depends_on=(f"release/{dep_value('argocd', 'release')}",),
        ),
    ]

    if gitops.argocd_application is not None:
        if gitops.argocd_application.exists():
            steps.append(manifest_step(session, "argocd-application", gitops.argocd_application))
        else:
            console.print(
                f"[yellow]\u26a0\ufe0f  Argo CD Application {gitops.argocd_application} not found, skipping[/yellow]"
            )
    return steps


# ============================================================================
# Application
# ============================================================================

def manifest_step(
    session: Session,
    name: str,
    path: Path,
    namespace: str | None = None,
    readiness: ReadinessCheck | None = None,
) -> ProvisioningStep:
    """Apply a local manifest file. A missing file fails the probe."""

    def _probe() -> bool:
        if not path.is_file():
            raise PreconditionFailed(f"File not found: '{path}'")
        return session.runtime.manifest_applied(path, namespace)

    def _apply(record: RecordFn) -> None:
        record(
            ResourceKind.MANIFEST,
            str(path.resolve()),
            namespace=namespace,
            attributes={"source": str(path.resolve())},
        )
        session.runtime.apply_manifest(path, namespace=namespace, validate=False)

    return ProvisioningStep(
        name=name,
        probe=_probe,
        apply=_apply,
        readiness=(lambda: readiness) if readiness is not None else None,
    )


def app_image_step(session: Session) -> ProvisioningStep:
    """Build the application image and import it into the k3d cluster."""
    app = session.cfg.app
    cluster = session.cluster_name

    def _apply(record: RecordFn) -> None:
        if app.app_build_context is None:
            raise PreconditionFailed("No build context configured for the application image")
        session.containers.build_image(
            app.app_build_context, app.app_image, {DOCKER_CLUSTER_LABEL: cluster}
        )
        record(ResourceKind.CONTAINER_IMAGE, app.app_image)
        session.runtime.import_image(cluster, app.app_image)

    return ProvisioningStep(
        name="app-image",
        probe=lambda: session.containers.node_has_image(cluster, app.app_image),
        apply=_apply,
    )


def application_steps(session: Session, flags: ActionFlags) -> list[ProvisioningStep]:
    app = session.cfg.app
    steps: list[ProvisioningStep] = []
    if flags.build_image:
        steps.append(app_image_step(session))
    steps.append(
        manifest_step(
            session,
            "application",
            app.app_manifest,
            readiness=service_check(session, app.app_service, app.app_namespace),
        )
    )
    return steps


def infrastructure_steps(session: Session, flags: ActionFlags) -> list[ProvisioningStep]:
    """Cluster, access credentials, namespaces and the GitOps controller."""
    app = session.cfg.app
    steps = [cluster_step(session, flags), kubeconfig_step(session)]
    if flags.profile == PROFILE_GITOPS:
        steps.extend(gitops_steps(session))
        steps.append(namespace_step(session, app.app_namespace))
    else:
        steps.extend([
            namespace_step(session, app.argocd_namespace),
            namespace_step(session, app.app_namespace),
            argocd_manifest_step(session),
        ])
    return steps


# ============================================================================
# Credentials
# ============================================================================

def argocd_admin_password(session: Session) -> str | None:
    secret = dep_value("argocd", "admin_secret", default="argocd-initial-admin-secret")
    try:
        return session.runtime.read_secret_field(secret, session.cfg.app.argocd_namespace, "password")
    except sh.ErrorReturnCode as err:
        logger.warning("Could not read Argo CD admin password: %s", err)
        return None


def gitlab_root_password(session: Session) -> str | None:
    """Poll for the GitLab initial root password Secret and decode it."""
    namespace = session.cfg.gitops.gitlab_namespace
    suffix = dep_value("gitlab", "root_password_secret_suffix", default="initial-root-password")
    found: dict[str, str] = {}

    def _predicate() -> ReadinessState:
        try:
            name = session.runtime.find_secret(namespace, suffix)
        except sh.ErrorReturnCode:
            return ReadinessState.NOT_YET
        if name:
            found["name"] = name
            return ReadinessState.READY
        return ReadinessState.NOT_YET

    check = ReadinessCheck(
        predicate=_predicate,
        interval=session.cfg.session.poll_interval,
        timeout=GITLAB_PASSWORD_TIMEOUT_SECONDS,
        description="GitLab initial root password secret",
    )
    if wait(check, session.cancel_event) is not WaitOutcome.READY:
        return None
    try:
        return session.runtime.read_secret_field(found["name"], namespace, "password")
    except sh.ErrorReturnCode as err:
        logger.warning("Could not read GitLab root password: %s", err)
        return None
