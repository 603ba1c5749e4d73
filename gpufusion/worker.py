"""Worker pod generation and worker selection for workloads."""

from __future__ import annotations

import json
import math
import random
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .models import GPU, Quantity, Resource, parse_quantity
from .utils import object_hash

WORKER_PORT_ENV = "TENSOR_FUSION_WORKER_PORT"
WORKER_CUDA_UP_LIMIT_TFLOPS_ENV = "TF_CUDA_UP_LIMIT_TFLOPS"
WORKER_CUDA_UP_LIMIT_ENV = "TF_CUDA_UP_LIMIT"
WORKER_CUDA_MEM_LIMIT_ENV = "TF_CUDA_MEM_LIMIT"
WORKER_POD_NAME_ENV = "POD_NAME"
VISIBLE_DEVICES_ENV = "NVIDIA_VISIBLE_DEVICES"
DATA_VOLUME_NAME = "tf-data"
TF_DATA_PATH = "/tmp/tensor-fusion/data"

PORT_MIN = 30000
PORT_MAX = 65535


class WorkerError(Exception):
    """Raised when a worker cannot be generated, located or selected."""


class WorkerPhase(str, Enum):
    """Lifecycle phase of a worker."""

    PENDING = "Pending"
    RUNNING = "Running"
    FAILED = "Failed"


@dataclass
class WorkerStatus:
    """Observed state of one worker of a workload."""

    worker_name: str
    worker_phase: Union[WorkerPhase, str] = WorkerPhase.PENDING
    node_selector: dict[str, str] = field(default_factory=dict)


@dataclass
class GpuInfo:
    """Static performance data of a GPU model."""

    full_model_name: str
    fp16_tflops: Quantity = field(default_factory=Quantity)

    def __post_init__(self) -> None:
        self.fp16_tflops = parse_quantity(self.fp16_tflops)


def _container_env(pod: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    containers = (pod.get("spec") or {}).get("containers") or []
    if not containers:
        name = (pod.get("metadata") or {}).get("name", "")
        raise WorkerError(f"pod {name} has no containers")
    return containers[0].get("env") or []


@dataclass
class WorkerGenerator:
    """Builds worker pods from a pod template for the GPUs they run on.

    ``pod_template`` is a pod template in its JSON form, either parsed or raw.
    """

    gpu_infos: list[GpuInfo] = field(default_factory=list)
    pod_template: Union[Mapping[str, Any], str, bytes, None] = None

    def worker_port(self, pod: Mapping[str, Any]) -> int:
        """Return the port recorded in the first container's environment."""
        env = _container_env(pod)
        found = next((var for var in env if var.get("name") == WORKER_PORT_ENV), None)
        if found is None:
            name = (pod.get("metadata") or {}).get("name", "")
            raise WorkerError(f"worker port not found in pod {name}")
        value = found.get("value", "")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise WorkerError(f"invalid worker port {value!r}") from exc

    def alloc_port(self) -> int:
        """Return a random port in the worker port range."""
        return random.randint(PORT_MIN, PORT_MAX)

    def _template(self) -> dict[str, Any]:
        raw = self.pod_template
        if raw is None:
            raise WorkerError("failed to unmarshal pod template: no template")
        if isinstance(raw, (str, bytes)):
            try:
                parsed = json.loads(raw)
            except ValueError as exc:
                raise WorkerError(f"failed to unmarshal pod template: {exc}") from exc
        else:
            parsed = deepcopy(dict(raw))
        if not isinstance(parsed, dict):
            raise WorkerError("failed to unmarshal pod template: not an object")
        return parsed

    def pod_template_hash(self, workload_spec: Any) -> str:
        """Return a hash of the pod template together with a workload spec."""
        return object_hash(self._template(), workload_spec)

    def generate_worker_pod(
        self,
        gpu: GPU,
        generate_name: str,
        namespace: str,
        port: int,
        limits: Resource,
        pod_template_hash: str,
    ) -> tuple[dict[str, Any], str]:
        """Build a worker pod bound to ``gpu``; return it with the template hash."""
        template = self._template()
        spec = deepcopy((template.get("template") or {}).get("spec") or {})
        containers = spec.get("containers") or []
        if not containers:
            raise WorkerError("pod template has no containers")

        spec["nodeSelector"] = dict(gpu.status.node_selector)
        spec.setdefault("volumes", []).append(
            {"name": DATA_VOLUME_NAME, "hostPath": {"path": TF_DATA_PATH}}
        )
        main = containers[0]
        main.setdefault("volumeMounts", []).append(
            {
                "name": DATA_VOLUME_NAME,
                "mountPath": TF_DATA_PATH,
                "subPathExpr": f"${{{WORKER_POD_NAME_ENV}}}",
            }
        )

        info = next(
            (i for i in self.gpu_infos if i.full_model_name == gpu.status.gpu_model),
            None,
        )
        if info is None:
            raise WorkerError(f"gpu info({gpu.status.gpu_model}) not found")
        fp16 = info.fp16_tflops.value()
        if fp16 == 0:
            raise WorkerError(f"gpu info({gpu.status.gpu_model}) has no fp16 tflops")
        up_limit = math.ceil(limits.tflops.value() / fp16 * 100)

        main.setdefault("env", []).extend(
            [
                {"name": VISIBLE_DEVICES_ENV, "value": gpu.status.uuid},
                {"name": WORKER_PORT_ENV, "value": str(port)},
                {"name": WORKER_CUDA_UP_LIMIT_TFLOPS_ENV, "value": str(limits.tflops.value())},
                {"name": WORKER_CUDA_UP_LIMIT_ENV, "value": str(up_limit)},
                {"name": WORKER_CUDA_MEM_LIMIT_ENV, "value": str(limits.vram.value())},
                {
                    "name": WORKER_POD_NAME_ENV,
                    "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}},
                },
            ]
        )
        pod = {
            "metadata": {"generateName": generate_name, "namespace": namespace},
            "spec": spec,
        }
        return pod, pod_template_hash


def select_worker(
    worker_statuses: Sequence[WorkerStatus],
    connection_workers: Iterable[str],
    max_skew: int,
) -> WorkerStatus:
    """Pick the least used healthy worker.

    ``connection_workers`` holds the worker name of every connection of the
    workload; empty names are ignored.
    """
    if not worker_statuses:
        raise WorkerError("no available worker")
    usage = Counter(name for name in connection_workers if name)
    healthy = [w for w in worker_statuses if w.worker_phase != WorkerPhase.FAILED]
    if not healthy:
        raise WorkerError("no available worker")
    min_usage = min(usage[w.worker_name] for w in healthy)
    eligible = [w for w in healthy if usage[w.worker_name] <= min_usage + max_skew]
    if not eligible:
        raise WorkerError("no available worker")
    return min(eligible, key=lambda w: usage[w.worker_name])