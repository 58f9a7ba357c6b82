from __future__ import annotations

from pathlib import Path

import pytest

from local_pvc_backup.config import AppConfig, ConfigurationError, normalize_log_level, parse_duration


def _environment(**overrides: str) -> dict[str, str]:
    environment = {
        "KUBERNETES_NODE_NAME": "worker-1",
        "S3_ENDPOINT": "https://s3.example.com",
        "S3_BUCKET": "backups",
        "S3_ACCESS_KEY": "access",
        "S3_SECRET_KEY": "secret",
        "S3_REGION": "us-east-1",
        "RESTIC_PASSWORD": "hunter2",
    }
    environment.update(overrides)
    return environment


def test_from_env_with_required_values_applies_defaults() -> None:
    app_config = AppConfig.from_env(_environment())

    assert app_config.node_name == "worker-1"
    assert app_config.storage_path == Path("/data")
    assert app_config.interval_seconds == 3600
    assert app_config.retention == "14d"
    assert app_config.log_level == "info"
    assert app_config.kube_auth_mode == "auto"
    assert app_config.restic_binary == "restic"
    assert app_config.repository.cache_path == "/var/cache/restic"
    assert app_config.repository.host == "worker-1"
    assert app_config.repository.repository_url == "s3:https://s3.example.com/backups/node-worker-1"


def test_from_env_with_missing_required_values_lists_all_of_them() -> None:
    environment = _environment()
    del environment["S3_BUCKET"]
    environment["RESTIC_PASSWORD"] = "  "

    with pytest.raises(ConfigurationError) as excinfo:
        AppConfig.from_env(environment)

    assert "S3_BUCKET" in str(excinfo.value)
    assert "RESTIC_PASSWORD" in str(excinfo.value)


def test_from_env_with_overrides_reads_every_optional_variable() -> None:
    app_config = AppConfig.from_env(
        _environment(
            S3_PATH="/cluster-a/",
            RESTIC_CACHE_DIR="/cache",
            RESTIC_BINARY="/usr/local/bin/restic",
            BACKUP_STORAGE_PATH="/var/lib/rancher/k3s/storage",
            BACKUP_INTERVAL="30m",
            BACKUP_RETENTION="7d,4w",
            BACKUP_LOG_LEVEL="DEBUG",
            BACKUP_KUBE_AUTH="kubeconfig",
            KUBECONFIG="~/.kube/config",
            BACKUP_KUBE_CONTEXT="homelab",
            BACKUP_REQUEST_TIMEOUT_SECONDS="5",
        )
    )

    assert app_config.repository.repository_url == "s3:https://s3.example.com/backups/cluster-a/node-worker-1"
    assert app_config.repository.cache_path == "/cache"
    assert app_config.restic_binary == "/usr/local/bin/restic"
    assert app_config.storage_path == Path("/var/lib/rancher/k3s/storage")
    assert app_config.interval_seconds == 1800
    assert app_config.retention == "7d,4w"
    assert app_config.log_level == "debug"
    assert app_config.kube_auth_mode == "kubeconfig"
    assert app_config.kubeconfig_path == "~/.kube/config"
    assert app_config.kube_context == "homelab"
    assert app_config.request_timeout_seconds == 5


def test_from_env_with_empty_retention_keeps_it_empty() -> None:
    assert AppConfig.from_env(_environment(BACKUP_RETENTION="")).retention == ""


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"BACKUP_INTERVAL": "often"}, "BACKUP_INTERVAL"),
        ({"BACKUP_INTERVAL": "0s"}, "BACKUP_INTERVAL"),
        ({"BACKUP_KUBE_AUTH": "token"}, "BACKUP_KUBE_AUTH"),
        ({"BACKUP_REQUEST_TIMEOUT_SECONDS": "soon"}, "BACKUP_REQUEST_TIMEOUT_SECONDS"),
        ({"BACKUP_REQUEST_TIMEOUT_SECONDS": "0"}, "BACKUP_REQUEST_TIMEOUT_SECONDS"),
    ],
)
def test_from_env_with_invalid_values_raises_configuration_error(overrides: dict[str, str], message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        AppConfig.from_env(_environment(**overrides))


def test_repository_target_repr_hides_secrets() -> None:
    rendered = repr(AppConfig.from_env(_environment()).repository)

    assert "secret" not in rendered
    assert "hunter2" not in rendered


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [("90", 90), ("90s", 90), ("30m", 1800), ("1h", 3600), ("1h30m", 5400), ("1.5h", 5400), ("500ms", 0.5)],
)
def test_parse_duration_with_go_style_values_returns_seconds(raw: str, seconds: float) -> None:
    assert parse_duration(raw) == pytest.approx(seconds)


@pytest.mark.parametrize("raw", ["", "h", "1d", "1h foo", "-5m"])
def test_parse_duration_with_invalid_values_raises_value_error(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_duration(raw)


def test_normalize_log_level_with_unknown_value_falls_back_to_info() -> None:
    assert normalize_log_level("verbose") == "info"
    assert normalize_log_level("WARN") == "warning"
    assert normalize_log_level(None) == "info"
