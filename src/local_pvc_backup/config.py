from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
import logging
import os
import re

from .models import RepositoryTarget

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_PATH = "/data"
DEFAULT_CACHE_PATH = "/var/cache/restic"
DEFAULT_INTERVAL = "1h"
DEFAULT_RETENTION = "14d"
DEFAULT_LOG_LEVEL = "info"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
KUBE_AUTH_MODES = ("auto", "in-cluster", "kubeconfig")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

_REQUIRED_VARIABLES = (
    "KUBERNETES_NODE_NAME",
    "S3_ENDPOINT",
    "S3_BUCKET",
    "S3_ACCESS_KEY",
    "S3_SECRET_KEY",
    "S3_REGION",
    "RESTIC_PASSWORD",
)
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigurationError(ValueError):
    """Raised when the environment does not describe a usable configuration."""


@dataclass(frozen=True)
class AppConfig:
    node_name: str
    repository: RepositoryTarget
    storage_path: Path = Path(DEFAULT_STORAGE_PATH)
    interval_seconds: float = 3600.0
    retention: str = DEFAULT_RETENTION
    log_level: str = DEFAULT_LOG_LEVEL
    restic_binary: str = "restic"
    kube_auth_mode: str = "auto"
    kubeconfig_path: str | None = None
    kube_context: str | None = None
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> AppConfig:
        env = os.environ if environ is None else environ

        missing = [name for name in _REQUIRED_VARIABLES if not env.get(name, "").strip()]
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

        node_name = env["KUBERNETES_NODE_NAME"].strip()
        cache_path = env.get("RESTIC_CACHE_DIR", "").strip() or DEFAULT_CACHE_PATH
        repository = RepositoryTarget(
            endpoint=env["S3_ENDPOINT"].strip(),
            bucket=env["S3_BUCKET"].strip(),
            host=node_name,
            access_key=env["S3_ACCESS_KEY"],
            secret_key=env["S3_SECRET_KEY"],
            region=env["S3_REGION"].strip(),
            password=env["RESTIC_PASSWORD"],
            cache_path=cache_path,
            path_prefix=env.get("S3_PATH", "").strip(),
        )

        interval_raw = env.get("BACKUP_INTERVAL", "").strip() or DEFAULT_INTERVAL
        try:
            interval_seconds = parse_duration(interval_raw)
        except ValueError as error:
            raise ConfigurationError(f"BACKUP_INTERVAL is invalid: {error}") from error

        kube_auth_mode = env.get("BACKUP_KUBE_AUTH", "").strip().lower() or "auto"
        if kube_auth_mode not in KUBE_AUTH_MODES:
            raise ConfigurationError(
                f"BACKUP_KUBE_AUTH must be one of {', '.join(KUBE_AUTH_MODES)}, got '{kube_auth_mode}'"
            )

        timeout_raw = env.get("BACKUP_REQUEST_TIMEOUT_SECONDS", "").strip()
        request_timeout_seconds = DEFAULT_REQUEST_TIMEOUT_SECONDS
        if timeout_raw:
            try:
                request_timeout_seconds = int(timeout_raw)
            except ValueError as error:
                raise ConfigurationError(
                    f"BACKUP_REQUEST_TIMEOUT_SECONDS must be an integer, got '{timeout_raw}'"
                ) from error
            if request_timeout_seconds <= 0:
                raise ConfigurationError("BACKUP_REQUEST_TIMEOUT_SECONDS must be positive")

        return cls(
            node_name=node_name,
            repository=repository,
            storage_path=Path(env.get("BACKUP_STORAGE_PATH", "").strip() or DEFAULT_STORAGE_PATH),
            interval_seconds=interval_seconds,
            retention=env.get("BACKUP_RETENTION", DEFAULT_RETENTION),
            log_level=normalize_log_level(env.get("BACKUP_LOG_LEVEL", DEFAULT_LOG_LEVEL)),
            restic_binary=env.get("RESTIC_BINARY", "").strip() or "restic",
            kube_auth_mode=kube_auth_mode,
            kubeconfig_path=env.get("KUBECONFIG", "").strip() or None,
            kube_context=env.get("BACKUP_KUBE_CONTEXT", "").strip() or None,
            request_timeout_seconds=request_timeout_seconds,
        )


def parse_duration(value: str) -> float:
    """Parse ``90``, ``90s``, ``30m``, ``1h30m`` or ``1.5h`` into seconds."""
    text = value.strip().lower()
    if not text:
        raise ValueError("duration is empty")
    if re.fullmatch(r"\d+(\.\d+)?", text):
        seconds = float(text)
    else:
        position = 0
        seconds = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != position:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            position = match.end()
        if position != len(text):
            raise ValueError(f"'{value}' is not a duration like 30m or 1h30m")
    if seconds <= 0:
        raise ValueError(f"'{value}' must be greater than zero")
    return seconds


def normalize_log_level(value: str | None) -> str:
    level = (value or "").strip().lower()
    if level == "warn":
        return "warning"
    if level in LOG_LEVELS:
        return level
    logger.warning("Invalid log level '%s', using %s", value, DEFAULT_LOG_LEVEL)
    return DEFAULT_LOG_LEVEL
