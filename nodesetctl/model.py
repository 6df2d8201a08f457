"""Object model for NodeSets, their Pods and PersistentVolumeClaims."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

NAMESPACE_DEFAULT = "default"

ANNOTATION_POD_CORDON = "slinky.slurm.net/pod-cordon"
ANNOTATION_POD_DELETION_COST = "slinky.slurm.net/pod-deletion-cost"
ANNOTATION_POD_DEADLINE = "slinky.slurm.net/pod-deadline"
LABEL_NODESET_POD_NAME = "slinky.slurm.net/pod-name"
LABEL_NODESET_POD_INDEX = "slinky.slurm.net/pod-index"
LABEL_REVISION_HASH = "controller-revision-hash"

CONDITION_READY = "Ready"
CONDITION_TRUE = "True"


@dataclass(frozen=True)
class GroupVersionKind:
    """Identifies an API object type."""

    group: str
    version: str
    kind: str

    def api_version(self) -> str:
        """Return the apiVersion string, e.g. ``group/version`` or ``v1``."""
        return f"{self.group}/{self.version}" if self.group else self.version


NODESET_GVK = GroupVersionKind("slinky.slurm.net", "v1alpha1", "NodeSet")
POD_GVK = GroupVersionKind("", "v1", "Pod")


@dataclass
class OwnerReference:
    """A reference from a dependent object to its owner."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: Optional[bool] = None
    block_owner_deletion: Optional[bool] = None


class PodPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass
class PodCondition:
    type: str
    status: str
    last_transition_time: Optional[datetime] = None


@dataclass
class Volume:
    """A pod volume; ``claim_name`` is set for PVC-backed volumes."""

    name: str
    claim_name: Optional[str] = None
    read_only: bool = False
    host_path: Optional[str] = None


@dataclass
class Pod:
    """A pod; also used as the pod template of a NodeSet."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    node_name: str = ""
    hostname: str = ""
    subdomain: str = ""
    host_network: bool = False
    containers: list[dict] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    tolerations: list[dict] = field(default_factory=list)
    phase: Optional[PodPhase] = None
    conditions: list[PodCondition] = field(default_factory=list)


@dataclass
class PersistentVolumeClaim:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    spec: dict = field(default_factory=dict)


class RetentionPolicyType(str, Enum):
    RETAIN = "Retain"
    DELETE = "Delete"


@dataclass
class RetentionPolicy:
    when_deleted: RetentionPolicyType = RetentionPolicyType.RETAIN
    when_scaled: RetentionPolicyType = RetentionPolicyType.RETAIN


@dataclass
class NodeSet:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    cluster_name: str = ""
    service_name: str = ""
    replicas: Optional[int] = None
    selector: dict[str, str] = field(default_factory=dict)
    template: Pod = field(default_factory=Pod)
    volume_claim_templates: list[PersistentVolumeClaim] = field(default_factory=list)
    retention_policy: Optional[RetentionPolicy] = None


def new_controller_ref(owner, gvk: GroupVersionKind) -> OwnerReference:
    """Build a controlling owner reference to ``owner``."""
    return OwnerReference(
        api_version=gvk.api_version(),
        kind=gvk.kind,
        name=owner.name,
        uid=owner.uid,
        controller=True,
        block_owner_deletion=True,
    )


def is_pod_ready(pod: Pod) -> bool:
    return any(
        c.type == CONDITION_READY and c.status == CONDITION_TRUE
        for c in pod.conditions
    )


def is_pod_cordon(pod: Pod) -> bool:
    try:
        return get_bool_from_annotations(pod.annotations, ANNOTATION_POD_CORDON)
    except ValueError:
        return False


def is_healthy(pod: Pod) -> bool:
    """A pod is healthy when it is running, ready and not terminating."""
    return (
        pod.phase == PodPhase.RUNNING
        and is_pod_ready(pod)
        and pod.deletion_timestamp is None
    )


_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


def get_number_from_annotations(annotations: dict[str, str], key: str) -> int:
    """Return the integer under ``key``; 0 if absent, ValueError if malformed."""
    value = annotations.get(key)
    if value is None:
        return 0
    if not _INTEGER_RE.fullmatch(value):
        raise ValueError(f"annotation {key!r} is not an integer: {value!r}")
    return int(value)


_RFC3339_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)


def get_time_from_annotations(
    annotations: dict[str, str], key: str
) -> Optional[datetime]:
    """Return the RFC 3339 time under ``key``; None if absent, ValueError if malformed."""
    value = annotations.get(key)
    if value is None:
        return None
    match = _RFC3339_RE.fullmatch(value)
    if not match:
        raise ValueError(f"annotation {key!r} is not an RFC 3339 time: {value!r}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        tz = timezone(sign * timedelta(hours=hours, minutes=minutes))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second),
        micros, tzinfo=tz,
    )


_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def get_bool_from_annotations(annotations: dict[str, str], key: str) -> bool:
    """Return the boolean under ``key``; False if absent, ValueError if malformed."""
    value = annotations.get(key)
    if value is None:
        return False
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    raise ValueError(f"annotation {key!r} is not a boolean: {value!r}")