import copy
from datetime import datetime, timedelta, timezone

import pytest

from nodesetctl.identity import get_node_name, new_nodeset_pod
from nodesetctl.model import NodeSet
from nodesetctl.slurmcontrol import (
    NODE_REASON_PREFIX,
    NodeState,
    PodInfo,
    SlurmControl,
    SlurmJob,
    SlurmNode,
    SlurmNodeStatus,
    compress_hostlist,
    expand_hostlist,
    tolerate_error,
)

CLUSTER = "slurm"


class FakeSlurmClient:
    def __init__(self, nodes=(), jobs=(), error=None):
        self.nodes = {node.name: copy.deepcopy(node) for node in nodes}
        self.jobs = list(jobs)
        self.error = error
        self.updates = []

    def get_node(self, name):
        if self.error is not None:
            raise self.error
        try:
            return copy.deepcopy(self.nodes[name])
        except KeyError:
            raise LookupError("Not Found") from None

    def list_nodes(self, refresh_cache=False):
        if self.error is not None:
            raise self.error
        return copy.deepcopy(list(self.nodes.values()))

    def list_jobs(self):
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.jobs)

    def update_node(self, node, *, state=None, reason=None, comment=None):
        self.updates.append((node.name, state, reason, comment))
        stored = self.nodes[node.name]
        states = set(stored.state)
        for requested in state or []:
            if requested == NodeState.UNDRAIN:
                states.discard(NodeState.DRAIN)
            else:
                states.add(requested)
        stored.state = sorted(states, key=lambda s: s.value)
        stored.comment = comment
        stored.reason = reason


def make_nodeset(name="foo"):
    return NodeSet(name=name, namespace="default", cluster_name=CLUSTER, replicas=1)


def control_for(client):
    return SlurmControl({("default", CLUSTER): client})


def node_for(pod, *states, **kwargs):
    return SlurmNode(name=get_node_name(pod), state=list(states), **kwargs)


def test_update_node_with_pod_info_sets_comment():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE)])
    control_for(client).update_node_with_pod_info(nodeset, pod)
    stored = client.get_node(get_node_name(pod))
    assert PodInfo.parse(stored.comment) == PodInfo(namespace="default", pod_name="foo-0")


def test_update_node_with_pod_info_skips_when_current():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    comment = PodInfo(namespace="default", pod_name="foo-0").to_string()
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE, comment=comment)])
    control_for(client).update_node_with_pod_info(nodeset, pod)
    assert client.updates == []


def test_update_node_with_pod_info_tolerates_missing_node():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient()
    control_for(client).update_node_with_pod_info(nodeset, pod)
    assert client.updates == []


def test_make_node_drain():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE)])
    control_for(client).make_node_drain(nodeset, pod, "drain")
    stored = client.get_node(get_node_name(pod))
    assert NodeState.DRAIN in stored.state_set()
    assert stored.reason == f"{NODE_REASON_PREFIX} drain"


def test_make_node_undrain():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE, NodeState.DRAIN)])
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    stored = client.get_node(get_node_name(pod))
    assert NodeState.DRAIN not in stored.state_set()


def test_make_node_undrain_skips_foreign_drain():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    node = node_for(pod, NodeState.IDLE, NodeState.DRAIN, reason="admin maintenance")
    client = FakeSlurmClient([node])
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    assert client.updates == []
    assert NodeState.DRAIN in client.get_node(get_node_name(pod)).state_set()


def test_make_node_undrain_skips_undrained_node():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE)])
    control_for(client).make_node_undrain(nodeset, pod, "undrain")
    assert client.updates == []


@pytest.mark.parametrize(
    "states, expected",
    [
        ([NodeState.IDLE], False),
        ([NodeState.DRAIN], True),
    ],
)
def test_is_node_drain(states, expected):
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, *states)])
    assert control_for(client).is_node_drain(nodeset, pod) is expected


@pytest.mark.parametrize(
    "states, expected",
    [
        ([NodeState.IDLE], False),
        ([NodeState.IDLE, NodeState.DRAIN], True),
        ([NodeState.ALLOCATED, NodeState.DRAIN], False),
        ([NodeState.DOWN, NodeState.DRAIN], True),
    ],
)
def test_is_node_drained(states, expected):
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, *states)])
    assert control_for(client).is_node_drained(nodeset, pod) is expected


def test_drain_checks_without_client_report_true():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    control = SlurmControl({})
    assert control.is_node_drain(nodeset, pod) is True
    assert control.is_node_drained(nodeset, pod) is True


def test_missing_node_is_treated_as_drain():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    assert control_for(FakeSlurmClient()).is_node_drain(nodeset, pod) is True


def test_untolerated_error_is_raised():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient(error=RuntimeError("Forbidden"))
    with pytest.raises(RuntimeError, match="Forbidden"):
        control_for(client).is_node_drain(nodeset, pod)


def _pods(nodeset, count):
    return [new_nodeset_pod(nodeset, i, "") for i in range(count)]


def test_calculate_node_status_empty():
    nodeset = make_nodeset()
    client = FakeSlurmClient()
    assert control_for(client).calculate_node_status(nodeset, []) == SlurmNodeStatus()


def test_calculate_node_status_different_nodesets():
    nodeset = make_nodeset("foo")
    other = make_nodeset("baz")
    pod = new_nodeset_pod(nodeset, 0, "")
    other_pod = new_nodeset_pod(other, 0, "")
    client = FakeSlurmClient(
        [node_for(pod, NodeState.IDLE), node_for(other_pod, NodeState.IDLE)]
    )
    status = control_for(client).calculate_node_status(nodeset, [pod])
    assert status == SlurmNodeStatus(total=1, idle=1)


def test_calculate_node_status_base_and_flag():
    nodeset = make_nodeset()
    pod = new_nodeset_pod(nodeset, 0, "")
    client = FakeSlurmClient([node_for(pod, NodeState.IDLE, NodeState.DRAIN)])
    status = control_for(client).calculate_node_status(nodeset, [pod])
    assert status == SlurmNodeStatus(total=1, idle=1, drain=1)


def test_calculate_node_status_all_base_states():
    nodeset = make_nodeset()
    pods = _pods(nodeset, 7)
    base = [
        NodeState.ALLOCATED, NodeState.DOWN, NodeState.ERROR, NodeState.FUTURE,
        NodeState.IDLE, NodeState.MIXED, NodeState.UNKNOWN,
    ]
    client = FakeSlurmClient([node_for(p, s) for p, s in zip(pods, base)])
    status = control_for(client).calculate_node_status(nodeset, pods)
    assert status == SlurmNodeStatus(
        total=7, allocated=1, down=1, error=1, future=1, idle=1, mixed=1, unknown=1
    )


def test_calculate_node_status_all_flag_states():
    nodeset = make_nodeset()
    pods = _pods(nodeset, 8)
    flags = [
        NodeState.COMPLETING, NodeState.DRAIN, NodeState.FAIL, NodeState.INVALID,
        NodeState.INVALID_REG, NodeState.MAINTENANCE, NodeState.NOT_RESPONDING,
        NodeState.UNDRAIN,
    ]
    client = FakeSlurmClient([node_for(p, s) for p, s in zip(pods, flags)])
    status = control_for(client).calculate_node_status(nodeset, pods)
    assert status == SlurmNodeStatus(
        total=8, completing=1, drain=1, fail=1, invalid=1, invalid_reg=1,
        maintenance=1, not_responding=1, undrain=1,
    )


def test_calculate_node_status_all_states():
    nodeset = make_nodeset()
    pods = _pods(nodeset, 8)
    pairs = [
        (NodeState.ALLOCATED, NodeState.COMPLETING),
        (NodeState.DOWN, NodeState.DRAIN),
        (NodeState.ERROR, NodeState.FAIL),
        (NodeState.FUTURE, NodeState.INVALID),
        (NodeState.FUTURE, NodeState.INVALID_REG),
        (NodeState.IDLE, NodeState.MAINTENANCE),
        (NodeState.MIXED, NodeState.NOT_RESPONDING),
        (NodeState.UNKNOWN, NodeState.UNDRAIN),
    ]
    client = FakeSlurmClient([node_for(p, *s) for p, s in zip(pods, pairs)])
    status = control_for(client).calculate_node_status(nodeset, pods)
    assert status == SlurmNodeStatus(
        total=8, allocated=1, down=1, error=1, future=2, idle=1, mixed=1, unknown=1,
        completing=1, drain=1, fail=1, invalid=1, invalid_reg=1, maintenance=1,
        not_responding=1, undrain=1,
    )


def test_calculate_node_status_tolerates_not_found():
    nodeset = make_nodeset()
    client = FakeSlurmClient(error=LookupError("Not Found"))
    status = control_for(client).calculate_node_status(nodeset, _pods(nodeset, 1))
    assert status == SlurmNodeStatus()


def test_get_node_names_filters_to_pods():
    nodeset = make_nodeset("foo")
    pods = _pods(nodeset, 2)
    other = new_nodeset_pod(make_nodeset("baz"), 0, "")
    client = FakeSlurmClient(
        [node_for(pods[0]), node_for(other), node_for(pods[1])]
    )
    assert control_for(client).get_node_names(nodeset, pods) == ["foo-0", "foo-1"]


def test_get_node_deadlines():
    now = int(datetime.now(timezone.utc).timestamp())
    start = datetime.fromtimestamp(now, tz=timezone.utc)
    nodeset = make_nodeset("bar")
    pods = _pods(nodeset, 2)
    names = [get_node_name(p) for p in pods]
    jobs = [
        SlurmJob(job_id=1, job_state=["RUNNING"], start_time=now, time_limit=30 * 60,
                 nodes=compress_hostlist([names[0]])),
        SlurmJob(job_id=2, job_state=["RUNNING"], start_time=now, time_limit=45 * 60,
                 nodes=compress_hostlist(names)),
        SlurmJob(job_id=3, job_state=["RUNNING"], start_time=now, time_limit=60 * 60,
                 nodes=compress_hostlist([names[0]])),
        SlurmJob(job_id=4, job_state=["COMPLETED"], nodes=compress_hostlist(names)),
        SlurmJob(job_id=5, job_state=["COMPLETED"], nodes=compress_hostlist([names[1]])),
    ]
    client = FakeSlurmClient([node_for(p, NodeState.MIXED) for p in pods], jobs)
    deadlines = control_for(client).get_node_deadlines(nodeset, pods)
    for name in names:
        assert deadlines[name] > start
    assert deadlines[names[0]] == start + timedelta(minutes=60 * 60)
    assert deadlines[names[1]] == start + timedelta(minutes=45 * 60)


def test_get_node_deadlines_infinite_limit_is_far_away():
    nodeset = make_nodeset("bar")
    pod = new_nodeset_pod(nodeset, 0, "")
    job = SlurmJob(job_id=1, job_state=["RUNNING"], start_time=0,
                   time_limit_infinite=True, nodes=get_node_name(pod))
    client = FakeSlurmClient([node_for(pod)], [job])
    deadlines = control_for(client).get_node_deadlines(nodeset, [pod])
    assert deadlines[get_node_name(pod)].year > 2200


def test_get_node_deadlines_rejects_bad_hostlist():
    nodeset = make_nodeset("bar")
    pod = new_nodeset_pod(nodeset, 0, "")
    job = SlurmJob(job_id=1, job_state=["RUNNING"], nodes="bar-[3-1]")
    client = FakeSlurmClient([node_for(pod)], [job])
    with pytest.raises(ValueError):
        control_for(client).get_node_deadlines(nodeset, [pod])


def test_get_node_deadlines_without_client_is_empty():
    nodeset = make_nodeset("bar")
    assert SlurmControl({}).get_node_deadlines(nodeset, _pods(nodeset, 1)) == {}


@pytest.mark.parametrize(
    "err, expected",
    [
        (None, True),
        (Exception(""), False),
        (Exception("Not Found"), True),
        (Exception("No Content"), True),
        (Exception("Forbidden"), False),
    ],
)
def test_tolerate_error(err, expected):
    assert tolerate_error(err) is expected


def test_expand_hostlist():
    assert expand_hostlist("node[01-03,7],login") == [
        "node01", "node02", "node03", "node7", "login"
    ]
    assert expand_hostlist("foo-[0-1]") == ["foo-0", "foo-1"]
    assert expand_hostlist("") == []


@pytest.mark.parametrize("expr", ["node[1-", "node]1[", "node[a-b]", "node[5-2]"])
def test_expand_hostlist_errors(expr):
    with pytest.raises(ValueError):
        expand_hostlist(expr)


def test_compress_hostlist():
    assert compress_hostlist(["foo-0", "foo-1", "foo-2", "foo-5"]) == "foo-[0-2,5]"
    assert compress_hostlist(["bar-0"]) == "bar-0"
    assert compress_hostlist(["n01", "n02", "login"]) == "n[01-02],login"


def test_compress_expand_round_trip():
    names = ["a-3", "a-1", "b10", "b09", "a-2", "gateway"]
    assert sorted(expand_hostlist(compress_hostlist(names))) == sorted(names)


def test_pod_info_round_trip_and_errors():
    info = PodInfo(namespace="default", pod_name="foo-0")
    assert PodInfo.parse(info.to_string()) == info
    with pytest.raises(ValueError):
        PodInfo.parse("not json")
    with pytest.raises(ValueError):
        PodInfo.parse(None)