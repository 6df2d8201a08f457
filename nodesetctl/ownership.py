"""Owner-reference bookkeeping for NodeSet PersistentVolumeClaims.

The owner references of a claim encode its retention policy:

- Retain on scale-down and on NodeSet deletion: no reference.
- Retain on scale-down, delete with the NodeSet: a reference to the NodeSet only.
- Delete on scale-down, retain on NodeSet deletion: a reference to the Pod only,
  once the Pod is cordoned.
- Delete on both: a reference to the Pod if it is cordoned, otherwise to the NodeSet.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from nodesetctl.model import (
    NODESET_GVK,
    POD_GVK,
    GroupVersionKind,
    NodeSet,
    OwnerReference,
    PersistentVolumeClaim,
    Pod,
    RetentionPolicy,
    RetentionPolicyType,
    is_pod_cordon,
    new_controller_ref,
)

logger = logging.getLogger(__name__)

_RETAIN = RetentionPolicyType.RETAIN
_DELETE = RetentionPolicyType.DELETE


def retention_policy(nodeset: NodeSet) -> RetentionPolicy:
    """Return the nodeset's claim retention policy, retaining on both if unset."""
    if nodeset.retention_policy is None:
        return RetentionPolicy(when_deleted=_RETAIN, when_scaled=_RETAIN)
    return RetentionPolicy(
        when_deleted=nodeset.retention_policy.when_deleted,
        when_scaled=nodeset.retention_policy.when_scaled,
    )


def has_owner_ref(target, owner) -> bool:
    """True if ``target`` references ``owner`` by UID, controller or not."""
    return any(ref.uid == owner.uid for ref in target.owner_references)


def has_stale_owner_ref(target, obj, gvk: GroupVersionKind) -> bool:
    """True if the first reference matching ``obj`` by name and type has another UID."""
    for ref in target.owner_references:
        if matches_ref(ref, obj, gvk):
            return ref.uid != obj.uid
    return False


def matches_ref(ref: OwnerReference, obj, gvk: GroupVersionKind) -> bool:
    """True if ``ref`` names ``obj`` with the given type, whatever its UID."""
    return (
        gvk.api_version() == ref.api_version
        and gvk.kind == ref.kind
        and ref.name == obj.name
    )


def add_controller_ref(
    refs: list[OwnerReference], owner, gvk: GroupVersionKind
) -> list[OwnerReference]:
    """Return ``refs`` with a controller reference to ``owner`` unless one by UID exists."""
    if any(ref.uid == owner.uid for ref in refs):
        return refs
    return [*refs, new_controller_ref(owner, gvk)]


def remove_refs(
    refs: Iterable[OwnerReference], predicate: Callable[[OwnerReference], bool]
) -> list[OwnerReference]:
    """Return the references for which ``predicate`` is false."""
    return [ref for ref in refs if not predicate(ref)]


def _is_controller(ref: OwnerReference) -> bool:
    return bool(ref.controller)


def has_unexpected_controller(
    claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod
) -> bool:
    """True if a policy other than retain applies and something else controls the claim.

    A reference to the nodeset or pod with a stale UID also counts as unexpected.
    """
    policy = retention_policy(nodeset)
    if policy.when_scaled == _RETAIN and policy.when_deleted == _RETAIN:
        return False
    for ref in claim.owner_references:
        if matches_ref(ref, nodeset, NODESET_GVK):
            if ref.uid != nodeset.uid:
                return True
            continue
        if matches_ref(ref, pod, POD_GVK):
            if ref.uid != pod.uid:
                return True
            continue
        if _is_controller(ref):
            return True
    return False


def has_non_controller_owner(
    claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod
) -> bool:
    """True if the nodeset or pod owns the claim without being its controller."""
    return any(
        ref.uid in (nodeset.uid, pod.uid) and not _is_controller(ref)
        for ref in claim.owner_references
    )


def _known_policy(policy: RetentionPolicy) -> bool:
    return policy.when_scaled in (_RETAIN, _DELETE) and policy.when_deleted in (
        _RETAIN,
        _DELETE,
    )


def is_claim_owner_up_to_date(
    claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod
) -> bool:
    """True if the claim's owner references agree with the nodeset's retention policy.

    Claims with stale references, or with an unexpected controller and no
    reference to us, are reported as up to date so that they are left alone.
    """
    if has_stale_owner_ref(claim, nodeset, NODESET_GVK) or has_stale_owner_ref(
        claim, pod, POD_GVK
    ):
        return True

    if has_unexpected_controller(claim, nodeset, pod):
        return not (has_owner_ref(claim, nodeset) or has_owner_ref(claim, pod))

    if has_non_controller_owner(claim, nodeset, pod):
        return False

    policy = retention_policy(nodeset)
    if not _known_policy(policy):
        logger.error("Unknown policy, treating as Retain: %s", nodeset.retention_policy)
        policy = RetentionPolicy(when_deleted=_RETAIN, when_scaled=_RETAIN)

    set_ref = has_owner_ref(claim, nodeset)
    pod_ref = has_owner_ref(claim, pod)

    if policy.when_deleted == _RETAIN and policy.when_scaled == _RETAIN:
        return not (set_ref or pod_ref)
    if policy.when_deleted == _DELETE and policy.when_scaled == _RETAIN:
        return set_ref and not pod_ref
    scaled_down = is_pod_cordon(pod)
    if policy.when_deleted == _RETAIN:
        return not set_ref and scaled_down == pod_ref
    # Delete on both: a scaled-down pod owns the claim, otherwise the nodeset does.
    return scaled_down != set_ref and scaled_down == pod_ref


def update_claim_owner_refs(
    claim: PersistentVolumeClaim, nodeset: NodeSet, pod: Pod
) -> None:
    """Rewrite the claim's references to the nodeset and pod to match the policy."""
    unexpected = has_unexpected_controller(claim, nodeset, pod)
    refs = remove_refs(
        claim.owner_references,
        lambda ref: matches_ref(ref, nodeset, NODESET_GVK) or matches_ref(ref, pod, POD_GVK),
    )
    if unexpected:
        claim.owner_references = refs
        return

    policy = retention_policy(nodeset)
    if not _known_policy(policy):
        logger.error("Unknown policy, treating as Retain: %s", nodeset.retention_policy)
    elif policy.when_scaled == _RETAIN and policy.when_deleted == _DELETE:
        refs = add_controller_ref(refs, nodeset, NODESET_GVK)
    elif policy.when_scaled == _DELETE:
        if is_pod_cordon(pod):
            refs = add_controller_ref(refs, pod, POD_GVK)
        elif policy.when_deleted == _DELETE:
            refs = add_controller_ref(refs, nodeset, NODESET_GVK)
    claim.owner_references = refs