"""Pod identity, naming and storage helpers for NodeSets."""

from __future__ import annotations

import copy
import dataclasses
import re

from nodesetctl.model import (
    LABEL_NODESET_POD_INDEX,
    LABEL_NODESET_POD_NAME,
    LABEL_REVISION_HASH,
    NODESET_GVK,
    NodeSet,
    PersistentVolumeClaim,
    Pod,
    Volume,
    new_controller_ref,
)

_POD_NAME_RE = re.compile(r"(.*)-([0-9]+)$")
_INT32_MAX = 2**31 - 1

_DAEMON_TOLERATIONS = (
    ("node.kubernetes.io/not-ready", "NoExecute"),
    ("node.kubernetes.io/unreachable", "NoExecute"),
    ("node.kubernetes.io/disk-pressure", "NoSchedule"),
    ("node.kubernetes.io/memory-pressure", "NoSchedule"),
    ("node.kubernetes.io/pid-pressure", "NoSchedule"),
    ("node.kubernetes.io/unschedulable", "NoSchedule"),
)
_NETWORK_UNAVAILABLE = ("node.kubernetes.io/network-unavailable", "NoSchedule")


def new_nodeset_pod(nodeset: NodeSet, ordinal: int, revision_hash: str = "") -> Pod:
    """Return a new Pod from the nodeset's template with the identity of ``ordinal``."""
    pod = dataclasses.replace(
        copy.deepcopy(nodeset.template),
        name=get_pod_name(nodeset, ordinal),
        namespace="",
        uid="",
        owner_references=[new_controller_ref(nodeset, NODESET_GVK)],
        creation_timestamp=None,
        deletion_timestamp=None,
        phase=None,
        conditions=[],
    )
    _init_identity(nodeset, pod)
    update_storage(nodeset, pod)
    if revision_hash:
        pod.labels[LABEL_REVISION_HASH] = revision_hash
    # Leave scheduling to the scheduler so that priority classes are honoured.
    pod.node_name = ""
    _add_daemon_tolerations(pod)
    return pod


def _init_identity(nodeset: NodeSet, pod: Pod) -> None:
    update_identity(nodeset, pod)
    if pod.hostname:
        pod.hostname = f"{pod.hostname}{get_ordinal(pod)}"
    else:
        pod.hostname = pod.name
    pod.subdomain = nodeset.service_name


def _add_daemon_tolerations(pod: Pod) -> None:
    wanted = list(_DAEMON_TOLERATIONS)
    if pod.host_network:
        wanted.append(_NETWORK_UNAVAILABLE)
    for key, effect in wanted:
        pod.tolerations = [
            t for t in pod.tolerations
            if not (t.get("key") == key and t.get("effect") == effect)
        ]
        pod.tolerations.append({"key": key, "operator": "Exists", "effect": effect})


def update_identity(nodeset: NodeSet, pod: Pod) -> None:
    """Conform the pod's name, namespace and identity labels to the nodeset."""
    ordinal = get_ordinal(pod)
    pod.name = get_pod_name(nodeset, ordinal)
    pod.namespace = nodeset.namespace
    pod.labels[LABEL_NODESET_POD_NAME] = pod.name
    pod.labels[LABEL_NODESET_POD_INDEX] = str(ordinal)


def update_storage(nodeset: NodeSet, pod: Pod) -> None:
    """Replace the pod's claim volumes with ones matching the nodeset's templates."""
    claims = get_persistent_volume_claims(nodeset, pod)
    new_volumes = [
        Volume(name=name, claim_name=claim.name, read_only=False)
        for name, claim in claims.items()
    ]
    new_volumes.extend(v for v in pod.volumes if v.name not in claims)
    pod.volumes = new_volumes


def is_pod_from_nodeset(nodeset: NodeSet, pod: Pod) -> bool:
    try:
        return re.search(f"^{nodeset.name}-", pod.name) is not None
    except re.error:
        return False


def get_parent_name(pod: Pod) -> str:
    return get_parent_name_and_ordinal(pod)[0]


def get_ordinal(pod: Pod) -> int:
    """Return the pod's ordinal, or -1 if it has none."""
    return get_parent_name_and_ordinal(pod)[1]


def get_parent_name_and_ordinal(pod: Pod) -> tuple[str, int]:
    """Split a pod name into parent name and ordinal; ("", -1) if it has neither."""
    match = _POD_NAME_RE.search(pod.name)
    if not match:
        return "", -1
    parent, digits = match.groups()
    value = int(digits)
    return parent, value if value <= _INT32_MAX else -1


def get_pod_name(nodeset: NodeSet, ordinal: int) -> str:
    return f"{nodeset.name}-{ordinal}"


def get_node_name(pod: Pod) -> str:
    """Return the Slurm node name of a pod: its hostname, else its name."""
    return pod.hostname or pod.name


def is_identity_match(nodeset: NodeSet, pod: Pod) -> bool:
    parent, ordinal = get_parent_name_and_ordinal(pod)
    return (
        ordinal >= 0
        and nodeset.name == parent
        and pod.name == get_pod_name(nodeset, ordinal)
        and pod.namespace == nodeset.namespace
        and pod.labels.get(LABEL_NODESET_POD_NAME, "") == pod.name
    )


def is_storage_match(nodeset: NodeSet, pod: Pod) -> bool:
    """True if the pod's volumes cover every claim template of the nodeset."""
    ordinal = get_ordinal(pod)
    if ordinal < 0:
        return False
    volumes = {v.name: v for v in pod.volumes}
    for claim in nodeset.volume_claim_templates:
        volume = volumes.get(claim.name)
        if (
            volume is None
            or volume.claim_name is None
            or volume.claim_name != get_persistent_volume_claim_name(nodeset, claim, ordinal)
        ):
            return False
    return True


def get_persistent_volume_claims(
    nodeset: NodeSet, pod: Pod
) -> dict[str, PersistentVolumeClaim]:
    """Map each claim template name to the pod-specific claim built from it."""
    ordinal = get_ordinal(pod)
    claims = {}
    for template in nodeset.volume_claim_templates:
        claim = copy.deepcopy(template)
        claim.name = get_persistent_volume_claim_name(nodeset, claim, ordinal)
        claim.namespace = nodeset.namespace
        claim.labels.update(nodeset.selector)
        claims[template.name] = claim
    return claims


def get_persistent_volume_claim_name(
    nodeset: NodeSet, claim: PersistentVolumeClaim, ordinal: int
) -> str:
    return f"{claim.name}-{nodeset.name}-{ordinal}"