"""Parsing of TensorFusion settings from pod annotations."""

from __future__ import annotations

import re
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any

from .models import DOMAIN, GPU_POOL_KEY, NamespacedName, Resource, parse_quantity

TRUE_STRING = "true"
WORKLOAD_KEY = f"{DOMAIN}/workload"
ENABLED_REPLICAS_ANNOTATION = f"{DOMAIN}/enabled-replicas"
GEN_WORKLOAD_ANNOTATION = f"{DOMAIN}/generate-workload"
REPLICAS_ANNOTATION = f"{DOMAIN}/replicas"
WORKLOAD_PROFILE_ANNOTATION = f"{DOMAIN}/client-profile"
TFLOPS_REQUEST_ANNOTATION = f"{DOMAIN}/tflops-request"
VRAM_REQUEST_ANNOTATION = f"{DOMAIN}/vram-request"
TFLOPS_LIMIT_ANNOTATION = f"{DOMAIN}/tflops-limit"
VRAM_LIMIT_ANNOTATION = f"{DOMAIN}/vram-limit"
GPU_COUNT_ANNOTATION = f"{DOMAIN}/gpu-count"
IS_LOCAL_GPU_ANNOTATION = f"{DOMAIN}/is-local-gpu"
NO_STANDALONE_WORKER_MODE_ANNOTATION = f"{DOMAIN}/no-standalone-worker-mode"
AUTO_SCALE_LIMITS_ANNOTATION = f"{DOMAIN}/auto-limits"
AUTO_SCALE_REQUESTS_ANNOTATION = f"{DOMAIN}/auto-requests"
AUTO_SCALE_REPLICAS_ANNOTATION = f"{DOMAIN}/auto-replicas"
INJECT_CONTAINER_ANNOTATION = f"{DOMAIN}/inject-container"
GPU_POOL_ANNOTATION = GPU_POOL_KEY

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1
_INT_PATTERN = re.compile(r"[+-]?\d+")


class ParseError(ValueError):
    """Raised when pod annotations do not describe a valid TensorFusion setup."""


@dataclass
class WorkloadProfileSpec:
    """Resources and behaviour requested for a workload."""

    pool_name: str = ""
    requests: Resource = field(default_factory=Resource)
    limits: Resource = field(default_factory=Resource)
    qos: str = ""
    replicas: int | None = None
    gpu_count: int = 0
    is_local_gpu: bool = False
    no_standalone_worker_mode: bool = False
    auto_set_limits: bool = False
    auto_set_requests: bool = False
    auto_set_replicas: bool = False


@dataclass
class TensorFusionInfo:
    """Everything the admission step needs to know about a pod."""

    profile: WorkloadProfileSpec
    workload_name: str
    container_names: list[str]
    replicas: int = 1
    enabled_replicas: int | None = None
    gen_workload: bool = False


def _parse_int32(value: str, message: str) -> int:
    if _INT_PATTERN.fullmatch(value) is None:
        raise ParseError(f"{message}: invalid syntax")
    number = int(value)
    if not _INT32_MIN <= number <= _INT32_MAX:
        raise ParseError(f"{message}: value out of range")
    return number


def _quantity(value: str, annotation: str):
    try:
        return parse_quantity(value)
    except ValueError as exc:
        raise ParseError(f"invalid quantity in {annotation}: {value!r}") from exc


def parse_tensor_fusion_info(
    pod: Mapping[str, Any],
    profiles: Mapping[NamespacedName, WorkloadProfileSpec] | None = None,
) -> TensorFusionInfo:
    """Read TensorFusion settings from a pod's annotations.

    ``pod`` is a pod in its JSON form; ``profiles`` maps workload profile
    names to their specs. The referenced profile is copied, never modified.
    """
    metadata = pod.get("metadata") or {}
    annotations = metadata.get("annotations")
    if annotations is None:
        raise ParseError("no annotations found")
    namespace = metadata.get("namespace") or ""

    enabled_replicas = None
    enabled = annotations.get(ENABLED_REPLICAS_ANNOTATION)
    if enabled is not None:
        enabled_replicas = _parse_int32(
            enabled, f"invalid enabledReplicas value: {enabled}"
        )

    workload_name = annotations.get(WORKLOAD_KEY)
    if workload_name is None:
        raise ParseError("workload key not found")
    gen_workload = annotations.get(GEN_WORKLOAD_ANNOTATION) == TRUE_STRING

    replicas_text = annotations.get(REPLICAS_ANNOTATION)
    replicas = (
        1 if replicas_text is None
        else _parse_int32(replicas_text, "invalid replicas value")
    )

    profile_name = annotations.get(WORKLOAD_PROFILE_ANNOTATION)
    if profile_name is not None:
        found = (profiles or {}).get(NamespacedName(profile_name, namespace))
        if found is None:
            raise ParseError(f"get workload profile({profile_name}) : not found")
        spec = deepcopy(found)
    else:
        spec = WorkloadProfileSpec()

    pool_name = annotations.get(GPU_POOL_ANNOTATION)
    if pool_name is None:
        raise ParseError("gpu pool not found")
    spec.pool_name = pool_name

    for annotation, resource, attr in (
        (TFLOPS_REQUEST_ANNOTATION, spec.requests, "tflops"),
        (VRAM_REQUEST_ANNOTATION, spec.requests, "vram"),
        (TFLOPS_LIMIT_ANNOTATION, spec.limits, "tflops"),
        (VRAM_LIMIT_ANNOTATION, spec.limits, "vram"),
    ):
        value = annotations.get(annotation)
        if value is not None:
            setattr(resource, attr, _quantity(value, annotation))

    gpu_count = annotations.get(GPU_COUNT_ANNOTATION)
    if gpu_count is not None:
        spec.gpu_count = _parse_int32(gpu_count, "invalid gpuCount value")

    if annotations.get(IS_LOCAL_GPU_ANNOTATION) == TRUE_STRING:
        spec.is_local_gpu = True
    if annotations.get(NO_STANDALONE_WORKER_MODE_ANNOTATION) == TRUE_STRING:
        spec.no_standalone_worker_mode = True
    if annotations.get(AUTO_SCALE_LIMITS_ANNOTATION) == TRUE_STRING:
        spec.auto_set_limits = True
    if annotations.get(AUTO_SCALE_REQUESTS_ANNOTATION) == TRUE_STRING:
        spec.auto_set_requests = True
    if annotations.get(AUTO_SCALE_REPLICAS_ANNOTATION) == TRUE_STRING:
        spec.auto_set_replicas = True

    inject = annotations.get(INJECT_CONTAINER_ANNOTATION)
    if inject is None:
        raise ParseError("inject container not found")
    container_names = inject.split(",")

    return TensorFusionInfo(
        profile=spec,
        workload_name=workload_name,
        container_names=container_names,
        replicas=replicas,
        enabled_replicas=enabled_replicas,
        gen_workload=gen_workload,
    )