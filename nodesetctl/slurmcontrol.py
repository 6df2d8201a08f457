"""Slurm-side control of NodeSet nodes: drain state, pod info, status and deadlines."""

from __future__ import annotations

import itertools
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from nodesetctl.identity import get_node_name
from nodesetctl.model import NodeSet, Pod

logger = logging.getLogger(__name__)

NODE_REASON_PREFIX = "slurm-operator:"

_JOB_RUNNING = "RUNNING"
_INFINITE_DURATION = timedelta(microseconds=(2**63 - 1) // 1000)
_MAX_TIME = datetime.max.replace(tzinfo=timezone.utc)
_TOLERATED_MESSAGES = frozenset({"Not Found", "No Content"})


class NodeState(str, Enum):
    """Base and flag states of a Slurm node."""

    # Base states
    ALLOCATED = "ALLOCATED"
    DOWN = "DOWN"
    ERROR = "ERROR"
    FUTURE = "FUTURE"
    IDLE = "IDLE"
    MIXED = "MIXED"
    UNKNOWN = "UNKNOWN"
    # Flag states
    CLOUD = "CLOUD"
    COMPLETING = "COMPLETING"
    DRAIN = "DRAIN"
    DYNAMIC_FUTURE = "DYNAMIC_FUTURE"
    DYNAMIC_NORM = "DYNAMIC_NORM"
    FAIL = "FAIL"
    INVALID = "INVALID"
    INVALID_REG = "INVALID_REG"
    MAINTENANCE = "MAINTENANCE"
    NOT_RESPONDING = "NOT_RESPONDING"
    PLANNED = "PLANNED"
    POWER_DOWN = "POWER_DOWN"
    POWER_UP = "POWER_UP"
    POWERED_DOWN = "POWERED_DOWN"
    POWERING_DOWN = "POWERING_DOWN"
    POWERING_UP = "POWERING_UP"
    REBOOT_ISSUED = "REBOOT_ISSUED"
    REBOOT_REQUESTED = "REBOOT_REQUESTED"
    RESERVED = "RESERVED"
    UNDRAIN = "UNDRAIN"


@dataclass
class SlurmNode:
    name: Optional[str] = None
    state: list[NodeState] = field(default_factory=list)
    reason: Optional[str] = None
    comment: Optional[str] = None

    def state_set(self) -> frozenset[NodeState]:
        return frozenset(self.state)


@dataclass
class SlurmJob:
    """A Slurm job; ``start_time`` is Unix seconds, ``time_limit`` is minutes."""

    job_id: Optional[int] = None
    job_state: list[str] = field(default_factory=list)
    nodes: Optional[str] = None
    start_time: Optional[int] = None
    time_limit: Optional[int] = None
    time_limit_infinite: bool = False


@dataclass(frozen=True)
class PodInfo:
    """The Kubernetes pod behind a Slurm node, stored in the node's comment."""

    namespace: str = ""
    pod_name: str = ""

    def to_string(self) -> str:
        return json.dumps({"namespace": self.namespace, "podName": self.pod_name})

    @classmethod
    def parse(cls, text: Optional[str]) -> "PodInfo":
        """Parse the output of ``to_string``; ValueError if it is not pod info."""
        if text is None:
            raise ValueError("no pod info present")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as err:
            raise ValueError(f"malformed pod info: {text!r}") from err
        if not isinstance(data, dict):
            raise ValueError(f"malformed pod info: {text!r}")
        return cls(
            namespace=str(data.get("namespace", "")),
            pod_name=str(data.get("podName", "")),
        )


@dataclass
class SlurmNodeStatus:
    total: int = 0
    # Base state
    allocated: int = 0
    down: int = 0
    error: int = 0
    future: int = 0
    idle: int = 0
    mixed: int = 0
    unknown: int = 0
    # Flag state
    completing: int = 0
    drain: int = 0
    fail: int = 0
    invalid: int = 0
    invalid_reg: int = 0
    maintenance: int = 0
    not_responding: int = 0
    undrain: int = 0


class _SlurmClient(Protocol):
    def get_node(self, name: str) -> SlurmNode: ...

    def list_nodes(self, refresh_cache: bool = False) -> list[SlurmNode]: ...

    def list_jobs(self) -> list[SlurmJob]: ...

    def update_node(
        self,
        node: SlurmNode,
        *,
        state: Optional[list[NodeState]] = None,
        reason: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> None: ...


_BASE_STATES = (
    (NodeState.ALLOCATED, "allocated"),
    (NodeState.DOWN, "down"),
    (NodeState.ERROR, "error"),
    (NodeState.FUTURE, "future"),
    (NodeState.IDLE, "idle"),
    (NodeState.MIXED, "mixed"),
    (NodeState.UNKNOWN, "unknown"),
)
_FLAG_STATES = (
    (NodeState.COMPLETING, "completing"),
    (NodeState.DRAIN, "drain"),
    (NodeState.FAIL, "fail"),
    (NodeState.INVALID, "invalid"),
    (NodeState.INVALID_REG, "invalid_reg"),
    (NodeState.MAINTENANCE, "maintenance"),
    (NodeState.NOT_RESPONDING, "not_responding"),
    (NodeState.UNDRAIN, "undrain"),
)


def tolerate_error(err: Optional[BaseException]) -> bool:
    """True for no error, or for the Not Found and No Content responses."""
    if err is None:
        return True
    return str(err) in _TOLERATED_MESSAGES


class SlurmControl:
    """Operations on the Slurm nodes backing the pods of a NodeSet.

    ``clusters`` maps ``(namespace, cluster_name)`` to a Slurm client. Where a
    NodeSet has no client, operations do nothing and report benign results.
    """

    def __init__(self, clusters: Mapping[tuple[str, str], _SlurmClient]):
        self._clusters = clusters

    def _lookup_client(self, nodeset: NodeSet) -> Optional[_SlurmClient]:
        return self._clusters.get((nodeset.namespace, nodeset.cluster_name))

    def _get_node(self, client: _SlurmClient, pod: Pod) -> Optional[SlurmNode]:
        """Fetch the pod's Slurm node; None if the error is tolerated."""
        try:
            return client.get_node(get_node_name(pod))
        except Exception as err:
            if tolerate_error(err):
                return None
            raise

    @staticmethod
    def _update(client: _SlurmClient, node: SlurmNode, **request) -> None:
        try:
            client.update_node(node, **request)
        except Exception as err:
            if not tolerate_error(err):
                raise

    def get_node_names(self, nodeset: NodeSet, pods: Iterable[Pod]) -> list[str]:
        """Return the names of the Slurm nodes that belong to ``pods``."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot get node names", nodeset.name)
            return []
        nodes = client.list_nodes()
        wanted = {get_node_name(pod) for pod in pods}
        return [node.name or "" for node in nodes if (node.name or "") in wanted]

    def update_node_with_pod_info(self, nodeset: NodeSet, pod: Pod) -> None:
        """Record the pod's namespace and name in its Slurm node's comment."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot update pod info", nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return
        info = PodInfo(namespace=pod.namespace, pod_name=pod.name)
        try:
            old = PodInfo.parse(node.comment)
        except ValueError:
            old = PodInfo()
        if old == info:
            logger.debug("Node %s already contains pod info, skipping update", node.name)
            return
        logger.info("Update Slurm Node %s with Kubernetes Pod info %s", node.name, info)
        self._update(client, node, comment=info.to_string())

    def make_node_drain(self, nodeset: NodeSet, pod: Pod, reason: str) -> None:
        """Add the DRAIN state to the pod's Slurm node."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot drain node", nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return
        logger.debug("make slurm node %s drain", node.name)
        self._update(
            client,
            node,
            state=[NodeState.DRAIN],
            reason=f"{NODE_REASON_PREFIX} {reason}",
        )

    def make_node_undrain(self, nodeset: NodeSet, pod: Pod, reason: str) -> None:
        """Remove the DRAIN state, unless the node was drained by someone else."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot undrain node", nodeset.name)
            return
        node = self._get_node(client, pod)
        if node is None:
            return
        states = node.state_set()
        node_reason = node.reason or ""
        if NodeState.DRAIN not in states or NodeState.UNDRAIN in states:
            logger.debug("Node %s is already undrained, skipping undrain", node.name)
            return
        if node_reason and NODE_REASON_PREFIX not in node_reason:
            logger.info(
                "Node %s was drained but not by slurm-operator (%s), skipping undrain",
                node.name,
                node_reason,
            )
            return
        logger.debug("make slurm node %s undrain", node.name)
        self._update(
            client,
            node,
            state=[NodeState.UNDRAIN],
            reason=f"{NODE_REASON_PREFIX} {reason}",
        )

    def is_node_drain(self, nodeset: NodeSet, pod: Pod) -> bool:
        """True if the pod's Slurm node has the DRAIN flag, or cannot be found."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot check drain", nodeset.name)
            return True
        node = self._get_node(client, pod)
        if node is None:
            return True
        return NodeState.DRAIN in node.state_set()

    def is_node_drained(self, nodeset: NodeSet, pod: Pod) -> bool:
        """True if the node is IDLE+DRAIN or DOWN+DRAIN, or cannot be found."""
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot check drained", nodeset.name)
            return True
        node = self._get_node(client, pod)
        if node is None:
            return True
        states = node.state_set()
        base = NodeState.IDLE in states or NodeState.DOWN in states
        return base and NodeState.DRAIN in states

    def calculate_node_status(
        self, nodeset: NodeSet, pods: Iterable[Pod]
    ) -> SlurmNodeStatus:
        """Count the states of the Slurm nodes that belong to ``pods``."""
        status = SlurmNodeStatus()
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot calculate status", nodeset.name)
            return status
        try:
            nodes = client.list_nodes(refresh_cache=True)
        except Exception as err:
            if tolerate_error(err):
                return status
            raise
        wanted = {get_node_name(pod) for pod in pods}
        for node in nodes:
            if (node.name or "") not in wanted:
                continue
            status.total += 1
            states = node.state_set()
            base = next((attr for state, attr in _BASE_STATES if state in states), None)
            if base is not None:
                setattr(status, base, getattr(status, base) + 1)
            for state, attr in _FLAG_STATES:
                if state in states:
                    setattr(status, attr, getattr(status, attr) + 1)
        return status

    def get_node_deadlines(
        self, nodeset: NodeSet, pods: Iterable[Pod]
    ) -> dict[str, datetime]:
        """Map each node of ``pods`` running a job to the latest end of its jobs."""
        deadlines: dict[str, datetime] = {}
        client = self._lookup_client(nodeset)
        if client is None:
            logger.debug("no client for nodeset %s, cannot get deadlines", nodeset.name)
            return deadlines
        wanted = {get_node_name(pod) for pod in pods}
        for job in client.list_jobs():
            if _JOB_RUNNING not in job.job_state:
                continue
            try:
                node_names = expand_hostlist(job.nodes or "")
            except ValueError:
                logger.error("failed to expand hostlist of job %s", job.job_id or 0)
                raise
            if wanted.isdisjoint(node_names):
                continue
            deadline = _job_deadline(job)
            for name in node_names:
                current = deadlines.get(name)
                if current is None or deadline > current:
                    deadlines[name] = deadline
        return deadlines


def _job_deadline(job: SlurmJob) -> datetime:
    start = datetime.fromtimestamp(job.start_time or 0, tz=timezone.utc)
    if job.time_limit_infinite:
        limit = _INFINITE_DURATION
    else:
        limit = timedelta(minutes=job.time_limit or 0)
    try:
        return start + limit
    except OverflowError:
        return _MAX_TIME


def _split_top_level(expr: str) -> list[str]:
    parts = []
    depth = 0
    start = 0
    for pos, char in enumerate(expr):
        if char == "[":
            depth += 1
            if depth > 1:
                raise ValueError(f"nested brackets in hostlist: {expr!r}")
        elif char == "]":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced brackets in hostlist: {expr!r}")
        elif char == "," and depth == 0:
            parts.append(expr[start:pos])
            start = pos + 1
    if depth:
        raise ValueError(f"unbalanced brackets in hostlist: {expr!r}")
    parts.append(expr[start:])
    return [part.strip() for part in parts if part.strip()]


_RANGE_RE = re.compile(r"(\d+)(?:-(\d+))?")


def _expand_range_body(body: str) -> list[str]:
    values = []
    for part in body.split(","):
        match = _RANGE_RE.fullmatch(part.strip())
        if not match:
            raise ValueError(f"invalid hostlist range: {body!r}")
        first, last = match.groups()
        low = int(first)
        high = int(last) if last is not None else low
        if high < low:
            raise ValueError(f"descending hostlist range: {part!r}")
        width = len(first)
        values.extend(str(n).zfill(width) for n in range(low, high + 1))
    return values


def expand_hostlist(expr: str) -> list[str]:
    """Expand a Slurm hostlist such as ``node[01-03,7],login`` into names."""
    names: list[str] = []
    for token in _split_top_level(expr):
        pieces = re.split(r"\[([^\[\]]*)\]", token)
        choices = []
        for index, piece in enumerate(pieces):
            if index % 2:
                choices.append(_expand_range_body(piece))
            else:
                if "[" in piece or "]" in piece:
                    raise ValueError(f"invalid hostlist: {expr!r}")
                choices.append([piece])
        names.extend("".join(combo) for combo in itertools.product(*choices))
    return names


_NUMBERED_RE = re.compile(r"(.*?)(\d+)")


def _format_runs(numbers: Sequence[int], width: int) -> list[str]:
    runs = []
    for _, group in itertools.groupby(enumerate(numbers), lambda pair: pair[1] - pair[0]):
        values = [value for _, value in group]
        low = str(values[0]).zfill(width)
        high = str(values[-1]).zfill(width)
        runs.append(low if low == high else f"{low}-{high}")
    return runs


def compress_hostlist(names: Iterable[str]) -> str:
    """Compress host names into a Slurm hostlist expression."""
    entries: dict[tuple[str, int], set[int]] = {}
    plain: dict[str, None] = {}
    order: list[object] = []
    for name in names:
        if not name:
            continue
        match = _NUMBERED_RE.fullmatch(name)
        if not match:
            if name not in plain:
                plain[name] = None
                order.append(name)
            continue
        prefix, digits = match.groups()
        width = len(digits) if digits.startswith("0") and len(digits) > 1 else 0
        key = (prefix, width)
        if key not in entries:
            entries[key] = set()
            order.append(key)
        entries[key].add(int(digits))
    parts = []
    for item in order:
        if isinstance(item, str):
            parts.append(item)
            continue
        prefix, width = item
        numbers = sorted(entries[item])
        if len(numbers) == 1:
            parts.append(f"{prefix}{str(numbers[0]).zfill(width)}")
        else:
            parts.append(f"{prefix}[{','.join(_format_runs(numbers, width))}]")
    return ",".join(parts)