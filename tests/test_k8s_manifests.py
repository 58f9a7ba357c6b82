from __future__ import annotations

from pathlib import Path

import yaml

_MANIFEST_DIR = Path(__file__).resolve().parents[1] / "deploy" / "k8s"


def _read_yaml_documents(file_name: str) -> list[dict]:
    return [document for document in yaml.safe_load_all((_MANIFEST_DIR / file_name).read_text(encoding="utf-8")) if document]


def _read_yaml_document(file_name: str) -> dict:
    return _read_yaml_documents(file_name)[0]


def _daemonset_container() -> dict:
    daemonset = _read_yaml_document("daemonset.yaml")
    return daemonset["spec"]["template"]["spec"]["containers"][0]


def _secret_env_keys() -> set[str]:
    return {
        entry["name"]
        for entry in _daemonset_container()["env"]
        if "secretKeyRef" in entry.get("valueFrom", {})
    }


def test_daemonset_with_node_name_env_reads_downward_api() -> None:
    env = {entry["name"]: entry for entry in _daemonset_container()["env"]}

    assert env["KUBERNETES_NODE_NAME"]["valueFrom"]["fieldRef"]["fieldPath"] == "spec.nodeName"


def test_daemonset_with_credentials_sources_them_from_secret() -> None:
    assert _secret_env_keys() == {
        "S3_ENDPOINT",
        "S3_BUCKET",
        "S3_ACCESS_KEY",
        "S3_SECRET_KEY",
        "S3_REGION",
        "RESTIC_PASSWORD",
    }


def test_daemonset_with_storage_mount_matches_configured_storage_path() -> None:
    kustomization = _read_yaml_document("kustomization.yaml")
    literals = dict(item.split("=", 1) for item in kustomization["configMapGenerator"][0]["literals"])
    mounts = {mount["name"]: mount for mount in _daemonset_container()["volumeMounts"]}

    assert mounts["storage"]["mountPath"] == literals["BACKUP_STORAGE_PATH"]
    assert mounts["storage"]["readOnly"] is True
    assert mounts["cache"]["mountPath"] == literals["RESTIC_CACHE_DIR"]


def test_daemonset_with_hardened_security_context_drops_capabilities() -> None:
    security_context = _daemonset_container()["securityContext"]

    assert security_context["allowPrivilegeEscalation"] is False
    assert security_context["readOnlyRootFilesystem"] is True
    assert security_context["capabilities"]["drop"] == ["ALL"]


def test_clusterrole_with_discovery_permissions_is_read_only() -> None:
    cluster_role = next(document for document in _read_yaml_documents("rbac.yaml") if document["kind"] == "ClusterRole")
    rule_map: dict[str, set[str]] = {}
    for rule in cluster_role["rules"]:
        for resource in rule["resources"]:
            rule_map.setdefault(resource, set()).update(rule["verbs"])

    assert rule_map == {"pods": {"list"}, "persistentvolumeclaims": {"get"}}


def test_kustomization_with_bundle_sets_expected_namespace_and_resources() -> None:
    kustomization = _read_yaml_document("kustomization.yaml")
    binding = next(
        document for document in _read_yaml_documents("rbac.yaml") if document["kind"] == "ClusterRoleBinding"
    )

    assert kustomization["namespace"] == "local-pvc-backup"
    assert kustomization["resources"] == ["namespace.yaml", "rbac.yaml", "daemonset.yaml"]
    assert binding["subjects"][0]["namespace"] == kustomization["namespace"]
    assert {item.split("=", 1)[0] for item in kustomization["secretGenerator"][0]["literals"]} == _secret_env_keys()
