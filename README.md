# gpufusion

`gpufusion` is a library of building blocks for a controller that pools GPUs and shares them between workloads. It has no runtime dependencies. Its modules are:

- `gpufusion.models`: quantities, resources, GPUs, object names and owner references.
- `gpufusion.filters`: filter chains over lists of GPUs. A chain is never changed in place.
- `gpufusion.strategies`: placement strategies that pack GPUs tightly or spread load across them.
- `gpufusion.allocator`: an in-memory GPU store that reserves and releases capacity and writes changes back through a client you supply.
- `gpufusion.worker`: worker pod generation, random port allocation and selection of the least loaded worker.
- `gpufusion.tf_parser`: reads a pod's annotations into a workload profile.
- `gpufusion.pod_counter`: per-template pod counters kept in the annotations of the pod's controlling owner.
- `gpufusion.utils`: JSON Pointer escaping, back-off with jitter, object hashing, debouncing, finalizer handling and owner-chain lookup.

## Installation

```
pip install .
```

To also install the test dependencies:

```
pip install ".[test]"
```

## Quantities, resources and GPUs

`parse_quantity` accepts:

- plain numbers, such as `"8"`;
- decimal suffixes `n u m k M G T P E`;
- binary suffixes `Ki Mi Gi Ti Pi Ei`;
- exponents, such as `"1e3"`.

A `Quantity` holds an exact value. The following operations are supported:

- `value()` rounds the value up to an integer.
- Quantities can be compared, added and subtracted.
- `str()` writes a quantity back in its original style, for example `"16Gi"` or `"500m"`.

`Resource` turns strings into quantities for you.

```python
from gpufusion.models import GPU, GPUStatus, GPUPhase, Resource, LABEL_KEY_OWNER, GPU_POOL_KEY

request = Resource(tflops="20", vram="4Gi")
print(request.vram.value())   # 4294967296

gpu = GPU(
    name="gpu-1",
    namespace="default",
    labels={GPU_POOL_KEY: "pool-a", LABEL_KEY_OWNER: "node-1"},
    status=GPUStatus(phase=GPUPhase.RUNNING, available=Resource(tflops="100", vram="16Gi")),
)
print(gpu.node_name, gpu.pool_name, gpu.key())   # node-1 pool-a default/gpu-1
```

Other members of the `GPU` class:

- `copy()` returns a deep copy.
- `key()` returns a `NamespacedName`.

## Filtering

`with_filters` returns a new `FilterRegistry`. The new registry runs its parent's filters first and then its own. `apply` stops early as soon as no candidates are left.

```python
from gpufusion.filters import FilterRegistry, PhaseFilter, ResourceFilter, SameNodeFilter

base = FilterRegistry().with_filters(PhaseFilter(GPUPhase.RUNNING))
chain = base.with_filters(ResourceFilter(request), SameNodeFilter(2))
candidates = chain.apply([gpu])
```

The filters behave as follows:

- `PhaseFilter` keeps GPUs whose phase is one of the allowed phases.
- `ResourceFilter` keeps GPUs that have at least the requested TFlops and VRAM available. GPUs without an `available` resource are dropped.
- `SameNodeFilter(count)` keeps only the GPUs on nodes that have at least `count` of them. GPUs without an owner label are dropped. If no node qualifies, it raises `FilterError`. When `count` is 1 or less it passes every GPU through unchanged.

## Choosing GPUs

```python
from gpufusion.strategies import new_strategy
from gpufusion.models import PlacementMode

strategy = new_strategy(PlacementMode.LOW_LOAD_FIRST)
selected = strategy.select_gpus(candidates, 2)
```

There are two strategies:

- `CompactFirst` is the default. It prefers the GPUs with the least free VRAM, then the least free TFlops.
- `LowLoadFirst` prefers the GPUs with the most free VRAM, then the most free TFlops.

When `count` is greater than one, all the chosen GPUs come from one node. For each node that has enough GPUs, the strategy takes its best `count` GPUs and scores the node as `total_vram * 1000 + total_tflops`. `CompactFirst` picks the node with the lowest score and `LowLoadFirst` the node with the highest.

`SelectionError` is raised in two cases:

- the candidate list is empty;
- no node has enough GPUs.

## Allocation

`GpuAllocator` works on a store of GPUs. The store is filled through a `ClusterClient`. To provide one, subclass `ClusterClient` and implement these four methods:

- `list_gpus()`
- `get_pool_template(pool_name)`
- `get_placement_mode(template_name)`
- `update_gpu_status(gpu)`

The last two lookups raise `ObjectNotFoundError` when the object is missing.

```python
from gpufusion.allocator import GpuAllocator

allocator = GpuAllocator(client, sync_interval=5.0)
allocator.init_store()
gpus = allocator.alloc("pool-a", request, 1)
allocator.dealloc(request, gpus[0])
written = allocator.sync()
```

The allocator's operations are:

- `alloc(pool_name, request, count)` takes the pool's GPUs from the store and keeps only running GPUs with enough free capacity, all on one node when `count` is greater than 1. It then picks GPUs with the pool's placement strategy, subtracts the request from each chosen GPU and marks those GPUs dirty. It returns copies of the chosen GPUs. Every failure is raised as `AllocationError`.
- `dealloc(request, gpu)` adds the request back to the GPU. It raises `AllocationError` if the GPU is not in the store.
- `sync()` writes the dirty GPUs through the client. GPUs whose write fails stay dirty. It returns the keys that were written.
- `start()` loads the store and starts a background thread that calls `sync()` every `sync_interval` seconds. `stop()` ends that thread. The allocator can also be used as a context manager, which starts it on entry and stops it on exit.
- `handle_gpu_create`, `handle_gpu_update` and `handle_gpu_delete` keep the store in step with changes you observe in the cluster. An update keeps the locally tracked available resources.
- `list_gpus_from_pool` and `stored` return copies of GPUs from the store.

## Workers

`select_worker` picks the worker to use:

- It takes the worker statuses and the worker name of each connection; empty names are ignored.
- Failed workers are skipped.
- Of the workers whose connection count is within `max_skew` of the minimum, it picks the one with the fewest connections. On a tie the earlier worker wins.
- If there is no worker to pick, it raises `WorkerError`.

`WorkerGenerator` has two fields:

- `gpu_infos`: a list of `GpuInfo`.
- `pod_template`: a pod template as a dict or as JSON text.

Its methods are:

- `generate_worker_pod(gpu, generate_name, namespace, port, limits, pod_template_hash)` returns a pod dict and the hash it was given. The pod is bound to the GPU's node selector and has a data volume. It also carries environment variables for the device UUID, the port, the TFlops limit, the compute percentage (derived from the model's FP16 TFlops) and the memory limit.
- `worker_port(pod)` reads the port back from the first container's environment.
- `alloc_port()` returns a random port between 30000 and 65535.
- `pod_template_hash(workload_spec)` hashes the template together with a spec.

## Pod annotations

`parse_tensor_fusion_info(pod, profiles)` reads a pod in JSON form into a `TensorFusionInfo`.

- `profiles` maps a `NamespacedName` to a `WorkloadProfileSpec`. When the pod names a profile, a copy of that profile is the starting point.
- Annotations then override the pool, requests, limits, GPU count, local-GPU mode, no-standalone-worker mode and the auto-scaling switches.
- The workload, GPU pool and inject-container annotations are required.
- Missing or invalid values raise `ParseError`.

The annotation keys are module constants such as `WORKLOAD_KEY` and `INJECT_CONTAINER_ANNOTATION`.

## Pod counters

`PodCounter(client)` keeps a count in the annotations of a pod's controlling owner. The client must provide:

- `get(api_version, kind, name, namespace)`, which returns the owner as a dict;
- `update(owner)`.

The methods are:

- `get(pod)` returns `(count, key)`.
- `increase(pod)` adds one to the count.
- `decrease(pod)` subtracts one. Once the count falls to zero or below, the key is removed.

`counter_key(pod)` chooses the key as follows: the pod's counter-key annotation if it has one, otherwise a key built from its `pod-template-hash` label, otherwise a key built from a hash of the pod. Errors are raised as `CounterError`.

## Utilities

The functions in `gpufusion.utils` are:

- `escape_json_pointer` escapes a string as a JSON Pointer reference token.
- `exponential_backoff_with_jitter(retry_count)` returns a delay in seconds, always between 3 and 60.
- `current_namespace()` reads `POD_NAMESPACE` and falls back to `tensor-fusion-sys`.
- `object_hash(*objs)` returns a 16-digit FNV-1a hex digest of the JSON form of the objects.
- `debounced_reconcile_check(last_processed, name, now)` returns a `DebounceResult`. It allows one reconcile per object every 5 seconds.
- `handle_finalizer(obj, client, delete_hook)` adds the finalizer, or removes it once the delete hook agrees. It returns whether the caller should stop and wait for the next reconcile.
- `find_root_owner_reference(client, namespace, obj)` follows first owner references upward through the objects `client.get` returns.
- `is_pod_condition_true` and `is_pod_terminated` check pod conditions and phases.

`NextLoop` and `TerminateLoop` are exceptions you can raise to stop a reconciliation.

## What this package does not do

This package is a library only:

- It does not connect to a Kubernetes cluster. Every client is an object you supply.
- It does not run an admission webhook, an HTTP server or an operator loop.
- It provides no command-line program.

## Running the tests

```
pytest
```