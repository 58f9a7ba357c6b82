"""Annotation-driven backup policy for persistent volume claims.

Pods and PVCs opt into backups with annotations under the
``backup.local-pvc.io`` prefix::

    backup.local-pvc.io/enabled: "true"
    backup.local-pvc.io/include: "data, conf"
    backup.local-pvc.io/exclude: "tmp/*,*.log"

Include entries are paths relative to the volume root; an empty include list
means the whole volume. Exclude entries are passed to restic relative to the
volume root. Malformed or missing annotations always yield a disabled policy.
"""

from __future__ import annotations

from typing import Any, Mapping

from .models import VolumePolicy

ANNOTATION_PREFIX = "backup.local-pvc.io"
ANNOTATION_ENABLED = f"{ANNOTATION_PREFIX}/enabled"
ANNOTATION_INCLUDE = f"{ANNOTATION_PREFIX}/include"
ANNOTATION_EXCLUDE = f"{ANNOTATION_PREFIX}/exclude"
# Older deployments annotated workloads with the *-pattern keys.
LEGACY_ANNOTATION_INCLUDE = f"{ANNOTATION_PREFIX}/include-pattern"
LEGACY_ANNOTATION_EXCLUDE = f"{ANNOTATION_PREFIX}/exclude-pattern"

DISABLED_POLICY = VolumePolicy()


def resolve_policy(annotations: Mapping[str, Any] | None) -> VolumePolicy:
    if not isinstance(annotations, Mapping):
        return DISABLED_POLICY

    if not is_enabled(annotations.get(ANNOTATION_ENABLED)):
        return DISABLED_POLICY

    include = _first_present(annotations, ANNOTATION_INCLUDE, LEGACY_ANNOTATION_INCLUDE)
    exclude = _first_present(annotations, ANNOTATION_EXCLUDE, LEGACY_ANNOTATION_EXCLUDE)
    return VolumePolicy(
        enabled=True,
        include_paths=split_annotation_list(include),
        exclude_patterns=split_annotation_list(exclude),
    )


def has_policy(annotations: Mapping[str, Any] | None) -> bool:
    """Return True when the resource declares the enable flag at all."""
    return isinstance(annotations, Mapping) and ANNOTATION_ENABLED in annotations


def is_enabled(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return value.strip().lower() == "true"


def split_annotation_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, str) or not value:
        return ()
    return tuple(segment.strip() for segment in value.split(",") if segment.strip())


def _first_present(annotations: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in annotations:
            return annotations[key]
    return None
