from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class VolumePolicy:
    enabled: bool = False
    include_paths: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()


@dataclass(frozen=True)
class EligibleVolume:
    namespace: str
    claim_name: str
    host_path: str
    policy: VolumePolicy
    claim_uid: str | None = None
    volume_name: str | None = None
    pod_name: str | None = None
    persistent_volume_name: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.claim_name


@dataclass(frozen=True)
class RepositoryTarget:
    endpoint: str
    bucket: str
    host: str
    access_key: str = field(repr=False)
    secret_key: str = field(repr=False)
    region: str
    password: str = field(repr=False)
    cache_path: str = "/var/cache/restic"
    path_prefix: str = ""

    @property
    def repository_url(self) -> str:
        endpoint = self.endpoint.rstrip("/")
        bucket = self.bucket.strip("/")
        prefix = self.path_prefix.strip("/")
        if prefix:
            return f"s3:{endpoint}/{bucket}/{prefix}/node-{self.host}"
        return f"s3:{endpoint}/{bucket}/node-{self.host}"

    def environment(self) -> dict[str, str]:
        return {
            "RESTIC_PASSWORD": self.password,
            "RESTIC_CACHE_DIR": self.cache_path,
            "AWS_ACCESS_KEY_ID": self.access_key,
            "AWS_SECRET_ACCESS_KEY": self.secret_key,
            "AWS_DEFAULT_REGION": self.region,
            "TMPDIR": self.cache_path,
        }


@dataclass(frozen=True)
class VolumeBackupResult:
    namespace: str
    claim_name: str
    status: str
    started_at: str
    finished_at: str
    paths: tuple[str, ...] = ()
    excludes: tuple[str, ...] = ()
    message: str = ""


@dataclass(frozen=True)
class CycleReport:
    started_at: str
    finished_at: str
    results: tuple[VolumeBackupResult, ...] = ()
    cleanup_status: str = "skipped"
    cleanup_message: str = ""

    @property
    def backed_up_count(self) -> int:
        return sum(1 for result in self.results if result.status == "success")
