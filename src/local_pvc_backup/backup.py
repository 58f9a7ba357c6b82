from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable
import logging
import posixpath
import re

from .k8s import KubernetesDiscoveryError
from .models import CycleReport, EligibleVolume, VolumeBackupResult
from .restic import ResticClient, ResticCommandError

logger = logging.getLogger(__name__)

RETENTION_WINDOW_PATTERN = re.compile(r"^(\d+[yYmwdh])+$")

VolumeSource = Callable[[], list[EligibleVolume]]


class BackupCycleError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


@dataclass(frozen=True)
class BackupPlan:
    paths: tuple[str, ...]
    excludes: tuple[str, ...]


class BackupOrchestrator:
    """Backs up every eligible volume of a node, one restic run per volume."""

    def __init__(
        self,
        *,
        discover: VolumeSource,
        restic: ResticClient,
        retention: str,
    ) -> None:
        self.discover = discover
        self.restic = restic
        self.retention_windows = parse_retention_policy(retention)

    def perform_backup_cycle(self) -> CycleReport:
        started_at = _utc_now_iso()
        try:
            volumes = self.discover()
        except KubernetesDiscoveryError as error:
            raise BackupCycleError(stage="discovery", reason=str(error)) from error

        if not volumes:
            logger.info("No PVCs to back up")
            return CycleReport(started_at=started_at, finished_at=_utc_now_iso())

        results: list[VolumeBackupResult] = []
        for volume in volumes:
            result = self.backup_one(volume)
            results.append(result)
            if result.status == "failed":
                raise BackupCycleError(
                    stage="backup",
                    reason=f"PVC {volume.namespace}/{volume.claim_name}: {result.message}",
                )

        cleanup_status, cleanup_message = self._cleanup()
        return CycleReport(
            started_at=started_at,
            finished_at=_utc_now_iso(),
            results=tuple(results),
            cleanup_status=cleanup_status,
            cleanup_message=cleanup_message,
        )

    def backup_one(self, volume: EligibleVolume) -> VolumeBackupResult:
        started_at = _utc_now_iso()
        plan = resolve_backup_paths(volume)
        if not plan.paths:
            message = "no include path resolves inside the volume, skipping"
            logger.warning("PVC %s/%s: %s", volume.namespace, volume.claim_name, message)
            return VolumeBackupResult(
                namespace=volume.namespace,
                claim_name=volume.claim_name,
                status="skipped",
                started_at=started_at,
                finished_at=_utc_now_iso(),
                excludes=plan.excludes,
                message=message,
            )

        logger.info(
            "Backing up PVC %s/%s, paths: %s, excludes: %s",
            volume.namespace,
            volume.claim_name,
            ", ".join(plan.paths),
            ", ".join(plan.excludes) or "none",
        )

        status = "failed"
        message = ""
        try:
            self.restic.backup(list(plan.paths), excludes=plan.excludes, tags=volume_tags(volume))
            status = "success"
        except ResticCommandError as error:
            message = str(error)
        except ValueError as error:
            message = _error_message(error)

        return VolumeBackupResult(
            namespace=volume.namespace,
            claim_name=volume.claim_name,
            status=status,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            paths=plan.paths,
            excludes=plan.excludes,
            message=message,
        )

    def _cleanup(self) -> tuple[str, str]:
        if not self.retention_windows:
            logger.debug("No retention windows configured, skipping cleanup")
            return "skipped", ""

        try:
            self.restic.forget(self.retention_windows)
        except ResticCommandError as error:
            logger.error("Error cleaning up old backups: %s", error)
            return "failed", str(error)

        logger.info("Cleaned up snapshots outside %s", ", ".join(self.retention_windows))
        return "success", ""


def resolve_backup_paths(volume: EligibleVolume) -> BackupPlan:
    base = posixpath.normpath(volume.host_path)
    include = volume.policy.include_paths
    if include:
        paths = _volume_paths(volume, base, include)
    else:
        paths = (base,)
    excludes = _volume_paths(volume, base, volume.policy.exclude_patterns)
    return BackupPlan(paths=paths, excludes=excludes)


def parse_retention_policy(retention: str | None) -> list[str]:
    if not retention:
        return []

    windows: list[str] = []
    for token in retention.split(","):
        window = token.strip()
        if not window:
            continue
        if not RETENTION_WINDOW_PATTERN.match(window):
            logger.warning("Ignoring invalid retention window '%s'", window)
            continue
        windows.append(window)
    return windows


def volume_tags(volume: EligibleVolume) -> list[str]:
    tags = [f"namespace={volume.namespace}", f"pvc={volume.claim_name}"]
    if volume.claim_uid:
        tags.append(f"uid={volume.claim_uid}")
    return tags


def _volume_paths(volume: EligibleVolume, base: str, entries: tuple[str, ...]) -> tuple[str, ...]:
    paths: list[str] = []
    for entry in entries:
        path = _join_volume_path(base, entry)
        if path is None:
            logger.warning(
                "Ignoring path '%s' of PVC %s/%s: it resolves outside the volume root",
                entry,
                volume.namespace,
                volume.claim_name,
            )
            continue
        paths.append(path)
    return tuple(paths)


def _join_volume_path(base: str, relative: str) -> str | None:
    # Entries are relative to the volume root, even with a leading slash.
    joined = posixpath.normpath(posixpath.join(base, relative.lstrip("/")))
    if posixpath.commonpath([base, joined]) != base:
        return None
    return joined


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
