from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar
import logging

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.config import ConfigException

from .annotations import has_policy, resolve_policy
from .models import EligibleVolume, VolumePolicy

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_TIMEOUT_SECONDS = 20
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api


class KubernetesDiscoveryError(RuntimeError):
    """Raised when volume discovery cannot safely continue."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    mode: str = "auto",
    kubeconfig_path: str | None = None,
    context: str | None = None,
) -> KubernetesClients:
    """Build API clients for the agent.

    ``in-cluster`` uses the mounted service account, ``kubeconfig`` loads the
    given (or default) kubeconfig, and ``auto`` tries the service account first
    and falls back to the kubeconfig so the agent can run outside a cluster.
    """
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    if mode == "auto":
        try:
            config.load_incluster_config()
        except ConfigException:
            logger.debug("In-cluster configuration unavailable, falling back to kubeconfig")
            _load_kubeconfig(expanded, context)
    elif mode == "in-cluster":
        try:
            config.load_incluster_config()
        except Exception as error:  # pylint: disable=broad-except
            raise KubernetesAuthenticationError(
                _format_authentication_error(
                    in_cluster=True,
                    kubeconfig_path=expanded,
                    context=context,
                    error=error,
                )
            ) from error
    elif mode == "kubeconfig":
        _load_kubeconfig(expanded, context)
    else:
        raise ValueError(f"unsupported Kubernetes auth mode: {mode}")

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
    )


def discover_volumes(
    clients: KubernetesClients,
    *,
    node_name: str,
    storage_path: Path,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> list[EligibleVolume]:
    """Return the backup-enabled PVC directories present on ``node_name``.

    Claims are keyed by ``(namespace, claim name)``; when several pods mount
    the same claim, the first one seen wins. Claims that cannot be read or
    whose directory is absent under ``storage_path`` are skipped.
    """
    if request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")

    pods = _safe_kubernetes_discovery_call(
        operation=f"list Pods on node '{node_name}'",
        hint="Check API reachability and RBAC verbs for pods across all namespaces.",
        func=lambda: clients.core_api.list_pod_for_all_namespaces(
            field_selector=f"spec.nodeName={node_name}",
            _request_timeout=request_timeout_seconds,
        ).items,
    )
    logger.debug("Found %d pods on node %s", len(pods), node_name)

    volumes: dict[tuple[str, str], EligibleVolume] = {}
    for pod in pods:
        metadata = pod.metadata
        namespace = metadata.namespace if metadata and metadata.namespace else ""
        pod_name = metadata.name if metadata and metadata.name else ""
        if not namespace:
            continue

        pod_policy = resolve_policy(metadata.annotations)
        logger.debug("Processing pod %s/%s (pod policy enabled=%s)", namespace, pod_name, pod_policy.enabled)

        pod_volumes = pod.spec.volumes if pod.spec and pod.spec.volumes else []
        for pod_volume in pod_volumes:
            pvc_source = pod_volume.persistent_volume_claim
            if not pvc_source or not pvc_source.claim_name:
                continue

            volume = _resolve_claim_volume(
                clients,
                namespace=namespace,
                pod_name=pod_name,
                volume_name=pod_volume.name,
                claim_name=pvc_source.claim_name,
                pod_policy=pod_policy,
                storage_path=storage_path,
                request_timeout_seconds=request_timeout_seconds,
            )
            if volume is None:
                continue

            existing = volumes.get(volume.key)
            if existing is not None:
                if existing.host_path != volume.host_path:
                    logger.warning(
                        "PVC %s/%s resolved to %s via pod %s but %s is already selected; keeping the first",
                        namespace,
                        volume.claim_name,
                        volume.host_path,
                        pod_name,
                        existing.host_path,
                    )
                continue
            volumes[volume.key] = volume

    logger.debug("Found %d PVCs to back up on node %s", len(volumes), node_name)
    return sorted(volumes.values(), key=lambda item: item.key)


def candidate_directory_names(*, persistent_volume_name: str, namespace: str, volume_name: str | None, claim_name: str) -> list[str]:
    """Directory names a local-path provisioner may have used for a claim."""
    names: list[str] = []
    for suffix in (volume_name, claim_name):
        if not suffix:
            continue
        name = f"{persistent_volume_name}_{namespace}_{suffix}"
        if name not in names:
            names.append(name)
    return names


def _resolve_claim_volume(
    clients: KubernetesClients,
    *,
    namespace: str,
    pod_name: str,
    volume_name: str | None,
    claim_name: str,
    pod_policy: VolumePolicy,
    storage_path: Path,
    request_timeout_seconds: int,
) -> EligibleVolume | None:
    try:
        pvc = clients.core_api.read_namespaced_persistent_volume_claim(
            name=claim_name,
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        )
    except ApiException as error:
        logger.warning(
            "Skipping PVC %s/%s for this cycle, reading it returned API status %s (%s)",
            namespace,
            claim_name,
            error.status if error.status is not None else "unknown",
            error.reason or "no reason provided",
        )
        return None
    except Exception as error:  # pylint: disable=broad-except
        logger.warning("Failed to read PVC %s/%s, skipping: %s", namespace, claim_name, error)
        return None

    pvc_annotations = pvc.metadata.annotations if pvc.metadata else None
    policy = resolve_policy(pvc_annotations) if has_policy(pvc_annotations) else pod_policy
    if not policy.enabled:
        logger.debug("  - Backup not enabled for PVC %s/%s", namespace, claim_name)
        return None

    persistent_volume_name = pvc.spec.volume_name if pvc.spec else None
    if not persistent_volume_name:
        logger.warning("PVC %s/%s is not bound to a volume yet, skipping", namespace, claim_name)
        return None

    host_path = _find_host_directory(
        storage_path,
        candidate_directory_names(
            persistent_volume_name=persistent_volume_name,
            namespace=namespace,
            volume_name=volume_name,
            claim_name=claim_name,
        ),
    )
    if host_path is None:
        logger.debug(
            "  - No directory for PVC %s/%s (volume %s) under %s, skipping",
            namespace,
            claim_name,
            persistent_volume_name,
            storage_path,
        )
        return None

    logger.debug("  - Selected PVC %s/%s at %s", namespace, claim_name, host_path)
    return EligibleVolume(
        namespace=namespace,
        claim_name=claim_name,
        host_path=str(host_path),
        policy=policy,
        claim_uid=pvc.metadata.uid if pvc.metadata else None,
        volume_name=volume_name,
        pod_name=pod_name or None,
        persistent_volume_name=persistent_volume_name,
    )


def _find_host_directory(storage_path: Path, names: list[str]) -> Path | None:
    for name in names:
        candidate = storage_path / name
        if candidate.is_dir():
            return candidate
    return None


def _load_kubeconfig(kubeconfig_path: str | None, context: str | None) -> None:
    try:
        config.load_kube_config(config_file=kubeconfig_path, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=False,
                kubeconfig_path=kubeconfig_path,
                context=context,
                error=error,
            )
        ) from error


def _safe_kubernetes_discovery_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesDiscoveryError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise KubernetesDiscoveryError(
            f"Kubernetes discovery failed while trying to {operation}: {error}. {hint}"
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes discovery failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
