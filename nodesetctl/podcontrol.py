"""Creation, deletion and update of NodeSet pods and their claims."""

from __future__ import annotations

import copy
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from nodesetctl.identity import (
    get_ordinal,
    get_persistent_volume_claim_name,
    get_persistent_volume_claims,
    is_identity_match,
    is_storage_match,
    update_identity,
    update_storage,
)
from nodesetctl.model import (
    POD_GVK,
    NodeSet,
    PersistentVolumeClaim,
    Pod,
    RetentionPolicyType,
)
from nodesetctl.ownership import (
    has_stale_owner_ref,
    has_unexpected_controller,
    is_claim_owner_up_to_date,
    retention_policy,
    update_claim_owner_refs,
)

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

_CREATE = "Create"
_DELETE = "Delete"
_UPDATE = "Update"

# Retry schedule for conflicting updates: 4 attempts, 10ms base, factor 5, 10% jitter.
_RETRY_STEPS = 4
_RETRY_BASE = 0.010
_RETRY_FACTOR = 5.0
_RETRY_JITTER = 0.1


class ApiError(Exception):
    """An error reported by the object store."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ApiError):
    """An object with the same kind, namespace and name already exists."""


class ConflictError(ApiError):
    """The object was modified concurrently."""


class AggregateError(ApiError):
    """Several errors reported together."""

    def __init__(self, errors: Iterable[BaseException]):
        self.errors = list(errors)
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            message = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(message)


@dataclass
class Event:
    obj: Any
    event_type: str
    reason: str
    message: str


@dataclass
class EventRecorder:
    """Keeps the events recorded against objects, in order."""

    events: list[Event] = field(default_factory=list)

    def event(self, obj, event_type: str, reason: str, message: str) -> None:
        self.events.append(Event(obj, event_type, reason, message))


Hook = Optional[Callable[..., None]]


class InMemoryClient:
    """An object store keyed by object class, namespace and name.

    The optional hooks are called with the arguments of each operation before
    it runs; an exception raised by a hook fails the operation.
    """

    def __init__(
        self,
        *objects,
        on_get: Hook = None,
        on_create: Hook = None,
        on_update: Hook = None,
        on_delete: Hook = None,
    ):
        self._store: dict[tuple[type, str, str], Any] = {}
        self._on_get = on_get
        self._on_create = on_create
        self._on_update = on_update
        self._on_delete = on_delete
        for obj in objects:
            self._store[self._key(obj)] = copy.deepcopy(obj)

    @staticmethod
    def _key(obj) -> tuple[type, str, str]:
        return type(obj), obj.namespace, obj.name

    def get(self, kind: type, namespace: str, name: str):
        """Return a copy of the stored object; NotFoundError if absent."""
        if self._on_get:
            self._on_get(kind, namespace, name)
        try:
            return copy.deepcopy(self._store[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(f'{kind.__name__} "{name}" not found') from None

    def create(self, obj) -> None:
        if self._on_create:
            self._on_create(obj)
        if not obj.name:
            raise ApiError("resource name may not be empty")
        key = self._key(obj)
        if key in self._store:
            raise AlreadyExistsError(
                f'{type(obj).__name__} "{obj.name}" already exists'
            )
        self._store[key] = copy.deepcopy(obj)

    def update(self, obj) -> None:
        if self._on_update:
            self._on_update(obj)
        key = self._key(obj)
        if key not in self._store:
            raise NotFoundError(f'{type(obj).__name__} "{obj.name}" not found')
        self._store[key] = copy.deepcopy(obj)

    def delete(self, kind: type, namespace: str, name: str) -> None:
        if self._on_delete:
            self._on_delete(kind, namespace, name)
        try:
            del self._store[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(f'{kind.__name__} "{name}" not found') from None


def _retry_delay(attempt: int) -> float:
    delay = _RETRY_BASE * _RETRY_FACTOR ** (attempt - 1)
    return delay * (1 + random.random() * _RETRY_JITTER)


class PodControl:
    """Manages NodeSet pods and keeps their claims consistent with the NodeSet."""

    def __init__(self, client: InMemoryClient, recorder: EventRecorder):
        self._client = client
        self._recorder = recorder

    def create_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Create the pod's claims, then the pod, then set claim ownership."""
        try:
            self.create_persistent_volume_claims(nodeset, pod)
        except ApiError as err:
            self._record_pod_event(_CREATE, nodeset, pod, err)
            raise
        create_error: Optional[ApiError] = None
        try:
            self._client.create(pod)
        except AlreadyExistsError:
            raise
        except ApiError as err:
            create_error = err
        try:
            self.update_pod_pvcs_for_retention_policy(nodeset, pod)
        except ApiError as err:
            self._record_pod_event(_UPDATE, nodeset, pod, err)
            raise
        self._record_pod_event(_CREATE, nodeset, pod, create_error)
        if create_error is not None:
            raise create_error

    def delete_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        try:
            self._client.delete(Pod, pod.namespace, pod.name)
        except ApiError as err:
            self._record_pod_event(_DELETE, nodeset, pod, err)
            raise
        self._record_pod_event(_DELETE, nodeset, pod, None)

    def update_nodeset_pod(self, nodeset: NodeSet, pod: Pod) -> None:
        """Conform the pod's identity, storage and claims, updating it on change.

        Conflicting updates are retried a few times with a growing delay.
        """
        attempted = False
        try:
            for attempt in range(_RETRY_STEPS):
                if attempt:
                    time.sleep(_retry_delay(attempt))
                if self._conform_pod(nodeset, pod):
                    break
                attempted = True
                try:
                    self._client.update(pod)
                    break
                except ApiError as err:
                    pod = self._refetch_pod(nodeset, pod)
                    if not isinstance(err, ConflictError) or attempt == _RETRY_STEPS - 1:
                        raise
        except ApiError as err:
            if attempted:
                self._record_pod_event(_UPDATE, nodeset, pod, err)
            raise
        if attempted:
            self._record_pod_event(_UPDATE, nodeset, pod, None)

    def _conform_pod(self, nodeset: NodeSet, pod: Pod) -> bool:
        """Bring the pod in line with the nodeset; True if nothing had to change."""
        consistent = True
        if not is_identity_match(nodeset, pod):
            update_identity(nodeset, pod)
            consistent = False
        if not is_storage_match(nodeset, pod):
            update_storage(nodeset, pod)
            consistent = False
            try:
                self.create_persistent_volume_claims(nodeset, pod)
            except ApiError as err:
                self._record_pod_event(_UPDATE, nodeset, pod, err)
                raise
        try:
            if not self.pod_pvcs_match_retention_policy(nodeset, pod):
                self.update_pod_pvcs_for_retention_policy(nodeset, pod)
                consistent = False
        except ApiError as err:
            self._record_pod_event(_UPDATE, nodeset, pod, err)
            raise
        return consistent

    def _refetch_pod(self, nodeset: NodeSet, pod: Pod) -> Pod:
        try:
            return self._client.get(Pod, nodeset.namespace, pod.name)
        except ApiError as err:
            logger.error(
                "error getting updated Pod %s/%s: %s", nodeset.namespace, pod.name, err
            )
            return pod

    def _template_claims(self, nodeset: NodeSet, pod: Pod):
        ordinal = get_ordinal(pod)
        for template in nodeset.volume_claim_templates:
            yield get_persistent_volume_claim_name(nodeset, template, ordinal)

    def pod_pvcs_match_retention_policy(self, nodeset: NodeSet, pod: Pod) -> bool:
        """False if any existing claim of the pod disagrees with the retention policy."""
        for claim_name in self._template_claims(nodeset, pod):
            try:
                claim = self._client.get(PersistentVolumeClaim, nodeset.namespace, claim_name)
            except NotFoundError:
                logger.debug(
                    "Expected claim %s missing, continuing to pick up in next iteration",
                    claim_name,
                )
                continue
            except ApiError as err:
                raise ApiError(
                    f"could not retrieve claim {claim_name} for {pod.name} "
                    "when checking PVC deletion policy"
                ) from err
            if not is_claim_owner_up_to_date(claim, nodeset, pod):
                return False
        return True

    def update_pod_pvcs_for_retention_policy(self, nodeset: NodeSet, pod: Pod) -> None:
        """Rewrite the owner references of the pod's claims to match the policy."""
        for claim_name in self._template_claims(nodeset, pod):
            try:
                claim = self._client.get(PersistentVolumeClaim, nodeset.namespace, claim_name)
            except NotFoundError:
                logger.debug(
                    "Expected claim %s missing, continuing to pick up in next iteration",
                    claim_name,
                )
                continue
            except ApiError as err:
                raise ApiError(
                    f"could not retrieve claim {claim_name} not found for {pod.name} "
                    f"when checking PVC deletion policy: {err}"
                ) from err
            if has_unexpected_controller(claim, nodeset, pod):
                self._recorder.event(
                    nodeset,
                    EVENT_WARNING,
                    "ConflictingController",
                    f"PersistentVolumeClaim {claim_name} has a conflicting OwnerReference "
                    "that acts as a managing controller, the retention policy is ignored "
                    "for this claim",
                )
            if not is_claim_owner_up_to_date(claim, nodeset, pod):
                update_claim_owner_refs(claim, nodeset, pod)
                try:
                    self._client.update(claim)
                except ApiError as err:
                    raise ApiError(
                        f"could not update claim {claim_name} for delete policy ownerRefs: {err}"
                    ) from err

    def is_pod_pvcs_stale(self, nodeset: NodeSet, pod: Pod) -> bool:
        """True if a claim of the pod refers to an earlier pod of the same name.

        Claims are never stale when they are retained on scale-down.
        """
        if retention_policy(nodeset).when_scaled == RetentionPolicyType.RETAIN:
            return False
        for claim in get_persistent_volume_claims(nodeset, pod).values():
            try:
                pvc = self._client.get(PersistentVolumeClaim, claim.namespace, claim.name)
            except NotFoundError:
                continue
            if has_stale_owner_ref(pvc, pod, POD_GVK):
                return True
        return False

    def create_persistent_volume_claims(self, nodeset: NodeSet, pod: Pod) -> None:
        """Create the pod's missing claims; AggregateError lists every failure."""
        errors: list[ApiError] = []
        for claim in get_persistent_volume_claims(nodeset, pod).values():
            try:
                pvc = self._client.get(PersistentVolumeClaim, nodeset.namespace, claim.name)
            except NotFoundError:
                try:
                    self._client.create(claim)
                except AlreadyExistsError as err:
                    errors.append(ApiError(f"failed to create PVC {claim.name}: {err}"))
                except ApiError as err:
                    errors.append(ApiError(f"failed to create PVC {claim.name}: {err}"))
                    self._record_claim_event(_CREATE, nodeset, pod, claim, err)
                else:
                    self._record_claim_event(_CREATE, nodeset, pod, claim, None)
            except ApiError as err:
                errors.append(ApiError(f"failed to retrieve PVC {claim.name}: {err}"))
                self._record_claim_event(_CREATE, nodeset, pod, claim, err)
            else:
                if pvc.deletion_timestamp is not None:
                    errors.append(ApiError(f"pvc {claim.name} is being deleted"))
        if errors:
            raise AggregateError(errors)

    def _record_pod_event(
        self, verb: str, nodeset: NodeSet, pod: Pod, err: Optional[BaseException]
    ) -> None:
        if err is None:
            self._recorder.event(
                nodeset,
                EVENT_NORMAL,
                f"Successful{verb.title()}",
                f"{verb.lower()} Pod {pod.name} in NodeSet {nodeset.name} successful",
            )
        else:
            self._recorder.event(
                nodeset,
                EVENT_WARNING,
                f"Failed{verb.title()}",
                f"{verb.lower()} Pod {pod.name} in NodeSet {nodeset.name} failed error: {err}",
            )

    def _record_claim_event(
        self,
        verb: str,
        nodeset: NodeSet,
        pod: Pod,
        claim: PersistentVolumeClaim,
        err: Optional[BaseException],
    ) -> None:
        if err is None:
            self._recorder.event(
                nodeset,
                EVENT_NORMAL,
                f"Successful{verb.title()}",
                f"{verb.lower()} Claim {claim.name} Pod {pod.name} "
                f"in NodeSet {nodeset.name} successful",
            )
        else:
            self._recorder.event(
                nodeset,
                EVENT_WARNING,
                f"Failed{verb.title()}",
                f"{verb.lower()} Claim {claim.name} for Pod {pod.name} "
                f"in NodeSet {nodeset.name} failed error: {err}",
            )