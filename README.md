# nodesetctl

The reconciliation logic for a NodeSet. A NodeSet is a group of Slurm compute
pods, and each pod has a stable name and ordinal. The package has no
dependencies outside the standard library and works on plain dataclasses.

## Modules

- **`nodesetctl.model`** holds the object model as dataclasses and enums:
  `NodeSet`, `Pod`, `PersistentVolumeClaim`, `Volume`, `OwnerReference`,
  `PodCondition`, `PodPhase`, `RetentionPolicy`, `RetentionPolicyType` and
  `GroupVersionKind`. It also has these helpers:
  - `new_controller_ref`, `is_pod_ready`, `is_pod_cordon` and `is_healthy`.
  - Annotation readers `get_number_from_annotations`,
    `get_time_from_annotations` (RFC 3339) and `get_bool_from_annotations`.
    Each returns a default when the key is absent and raises `ValueError`
    when the value is malformed.
- **`nodesetctl.identity`** covers pod names and storage.
  - `new_nodeset_pod(nodeset, ordinal, revision_hash)` builds a pod from the
    nodeset's template.
  - `get_parent_name_and_ordinal`, `get_parent_name` and `get_ordinal` split a
    pod name of the form `<parent>-<n>`. When the name has no ordinal they
    return `""` and `-1`.
  - `get_pod_name` and `get_node_name` give names. `get_node_name` returns the
    hostname if the pod has one, and the pod name otherwise.
  - `is_identity_match` and `update_identity` check and repair a pod's
    identity.
  - `is_storage_match` and `update_storage` check and repair a pod's volumes.
  - `get_persistent_volume_claims` and `get_persistent_volume_claim_name`
    derive the pod's claims, named `<template>-<nodeset>-<ordinal>`.
  - `is_pod_from_nodeset` checks whether a pod belongs to a nodeset.
- **`nodesetctl.ordering`** ranks pods from most to least preferable to delete.
  The criteria apply in this order: unscheduled first, then phase
  (Pending < Unknown < Running), not ready, lower deletion cost, earlier
  deadline, cordoned, higher ordinal, more recently ready, and newer.
  - `compare_active_pods` compares two pods and `sort_active_pods` sorts a
    collection.
  - `split_active_pods(pods, partition)` sorts the pods and splits them at the
    clamped partition.
  - `split_unhealthy_pods(pods)` sorts by creation time and name, then splits
    off as many pods as are unhealthy.
  - `after_or_zero` compares two times and treats a missing time as the later
    one.
- **`nodesetctl.ownership`** applies the PVC retention policy through owner
  references:
  - `is_claim_owner_up_to_date` and `update_claim_owner_refs`.
  - `has_unexpected_controller`, `has_non_controller_owner`, `has_owner_ref`,
    `has_stale_owner_ref`, `matches_ref`, `add_controller_ref`, `remove_refs`
    and `retention_policy`. When the nodeset sets no policy,
    `retention_policy` retains in both cases.
- **`nodesetctl.podcontrol`**:
  - `PodControl(client, recorder)` creates, updates and deletes NodeSet pods
    along with their claims.
  - `update_nodeset_pod` retries up to four times on `ConflictError`.
  - `create_persistent_volume_claims` raises one `AggregateError` that lists
    every failure.
  - Events go to an `EventRecorder` as `Event` records.
  - `InMemoryClient` is a dict-backed object store. It raises `NotFoundError`
    and `AlreadyExistsError`, which are subclasses of `ApiError`. Its optional
    `on_get`, `on_create`, `on_update` and `on_delete` hooks can inject
    failures.
- **`nodesetctl.slurmcontrol`**:
  - `SlurmControl(clusters)` maps `(namespace, cluster_name)` to a Slurm
    client. It provides `make_node_drain`, `make_node_undrain`,
    `is_node_drain`, `is_node_drained`, `update_node_with_pod_info`,
    `get_node_names`, `calculate_node_status` and `get_node_deadlines`.
  - `calculate_node_status` returns a `SlurmNodeStatus`.
  - `get_node_deadlines` returns a dict that maps each node name to the latest
    end time of its running jobs.
  - Supporting types are `SlurmNode`, `SlurmJob`, `NodeState` and `PodInfo`.
    `PodInfo` is stored as JSON in a node's comment.
  - `tolerate_error` accepts no error, or an error whose text is `Not Found`
    or `No Content`.
  - `expand_hostlist` and `compress_hostlist` convert between host names and
    hostlist expressions such as `node[01-03,7]`.

## Example

```python
from nodesetctl.model import NodeSet
from nodesetctl.identity import new_nodeset_pod, get_node_name
from nodesetctl.ordering import split_active_pods
from nodesetctl.podcontrol import EventRecorder, InMemoryClient, PodControl

nodeset = NodeSet(name="compute", namespace="default")
pods = [new_nodeset_pod(nodeset, i, "") for i in range(3)]
print([get_node_name(p) for p in pods])  # ['compute-0', 'compute-1', 'compute-2']

to_delete, to_keep = split_active_pods(pods, 1)
print([p.name for p in to_delete])  # ['compute-2']

recorder = EventRecorder()
control = PodControl(InMemoryClient(), recorder)
for pod in to_keep:
    control.create_nodeset_pod(nodeset, pod)
print([e.reason for e in recorder.events])  # ['SuccessfulCreate', 'SuccessfulCreate']
```

## The Slurm client

`SlurmControl` does not talk to Slurm itself. For each cluster you supply an
object with these methods:

- `get_node(name)`
- `list_nodes(refresh_cache=False)`
- `list_jobs()`
- `update_node(node, *, state=None, reason=None, comment=None)`

When a nodeset has no client, each operation does nothing and returns a benign
result. The drain checks report `True`, the status comes back empty, and
`get_node_deadlines` returns an empty dict.

## What it does not do

- It has no Kubernetes API client. `InMemoryClient` is the only store it ships.
- It has no Slurm REST client.
- It runs no controller loop and provides no command-line program.

Reconciliation, watching and persistence are left to the code that calls
these functions.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```