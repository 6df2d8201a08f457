"""Orderings of NodeSet pods for scale-down and health splitting."""

from __future__ import annotations

import functools
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

from nodesetctl.identity import get_ordinal
from nodesetctl.model import (
    ANNOTATION_POD_CORDON,
    ANNOTATION_POD_DEADLINE,
    ANNOTATION_POD_DELETION_COST,
    CONDITION_READY,
    CONDITION_TRUE,
    Pod,
    PodPhase,
    get_bool_from_annotations,
    get_number_from_annotations,
    get_time_from_annotations,
    is_healthy,
    is_pod_ready,
)

_ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)
_PHASE_WEIGHT = {PodPhase.PENDING: 0, PodPhase.UNKNOWN: 1, PodPhase.RUNNING: 2}

T = TypeVar("T")


def _lenient(parse: Callable[[dict, str], T], pod: Pod, key: str, default: T) -> T:
    try:
        return parse(pod.annotations, key)
    except ValueError:
        return default


def _instant(t: Optional[datetime]) -> datetime:
    return _ZERO_TIME if t is None else t


def _ready_time(pod: Pod) -> Optional[datetime]:
    if is_pod_ready(pod):
        for c in pod.conditions:
            if c.type == CONDITION_READY and c.status == CONDITION_TRUE:
                return c.last_transition_time
    return None


def after_or_zero(t1: Optional[datetime], t2: Optional[datetime]) -> bool:
    """True if t1 is after t2; a zero (None) time counts as after any other."""
    if t1 is None or t2 is None:
        return t1 is None
    return t1 > t2


def _prefer_for_deletion(pod1: Pod, pod2: Pod) -> bool:
    if pod1.node_name != pod2.node_name and (not pod1.node_name or not pod2.node_name):
        return not pod1.node_name

    weight1 = _PHASE_WEIGHT.get(pod1.phase, 0)
    weight2 = _PHASE_WEIGHT.get(pod2.phase, 0)
    if weight1 != weight2:
        return weight1 < weight2

    ready1, ready2 = is_pod_ready(pod1), is_pod_ready(pod2)
    if ready1 != ready2:
        return not ready1

    cost1 = _lenient(get_number_from_annotations, pod1, ANNOTATION_POD_DELETION_COST, 0)
    cost2 = _lenient(get_number_from_annotations, pod2, ANNOTATION_POD_DELETION_COST, 0)
    if cost1 != cost2:
        return cost1 < cost2

    deadline1 = _instant(_lenient(get_time_from_annotations, pod1, ANNOTATION_POD_DEADLINE, None))
    deadline2 = _instant(_lenient(get_time_from_annotations, pod2, ANNOTATION_POD_DEADLINE, None))
    if deadline1 != deadline2:
        return deadline1 < deadline2

    cordon1 = _lenient(get_bool_from_annotations, pod1, ANNOTATION_POD_CORDON, False)
    cordon2 = _lenient(get_bool_from_annotations, pod2, ANNOTATION_POD_CORDON, False)
    if cordon1 or cordon2:
        return cordon1

    ordinal1, ordinal2 = get_ordinal(pod1), get_ordinal(pod2)
    if ordinal1 != ordinal2:
        return ordinal1 > ordinal2

    if ready1 and ready2:
        time1, time2 = _ready_time(pod1), _ready_time(pod2)
        if time1 != time2:
            return after_or_zero(time1, time2)

    if pod1.creation_timestamp != pod2.creation_timestamp:
        return after_or_zero(pod1.creation_timestamp, pod2.creation_timestamp)

    return False


def compare_active_pods(pod1: Pod, pod2: Pod) -> int:
    """Negative if pod1 should be deleted before pod2, positive if after, else 0."""
    if _prefer_for_deletion(pod1, pod2):
        return -1
    if _prefer_for_deletion(pod2, pod1):
        return 1
    return 0


def sort_active_pods(pods: Iterable[Pod]) -> list[Pod]:
    """Return pods ordered with the best deletion candidates first."""
    return sorted(pods, key=functools.cmp_to_key(compare_active_pods))


def split_active_pods(
    pods: Optional[Iterable[Pod]], partition: int
) -> tuple[list[Pod], list[Pod]]:
    """Sort pods by deletion preference and split them at ``partition``."""
    ordered = sort_active_pods(pods or [])
    pivot = min(max(partition, 0), len(ordered))
    return ordered[:pivot], ordered[pivot:]


def split_unhealthy_pods(
    pods: Optional[Iterable[Pod]],
) -> tuple[list[Pod], list[Pod]]:
    """Sort pods by creation time and name, then split off as many as are unhealthy."""
    pods = list(pods or [])
    unhealthy_count = sum(1 for pod in pods if not is_healthy(pod))
    ordered = sorted(pods, key=lambda p: (_instant(p.creation_timestamp), p.name))
    return ordered[:unhealthy_count], ordered[unhealthy_count:]