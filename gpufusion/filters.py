"""Composable filters that narrow down GPU candidates."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from .models import GPU, GPUPhase, Resource


class FilterError(Exception):
    """Raised when a filter cannot produce any candidates."""


class GPUFilter(ABC):
    """Narrows a list of GPUs; implementations never modify their input."""

    @abstractmethod
    def filter(self, gpus: Sequence[GPU]) -> list[GPU]:
        """Return the GPUs that pass this filter."""


class FilterRegistry:
    """An immutable chain of filters, applied parent first."""

    def __init__(
        self,
        parent: FilterRegistry | None = None,
        filters: Iterable[GPUFilter] = (),
    ) -> None:
        self._parent = parent
        self._filters = tuple(filters)

    def with_filters(self, *args: GPUFilter) -> FilterRegistry:
        """Return a new registry that also applies the given filters."""
        if not args:
            return self
        return FilterRegistry(self, args)

    def apply(self, gpus: Sequence[GPU]) -> list[GPU]:
        """Run every filter in order, stopping once nothing is left."""
        result = list(gpus)
        if self._parent is not None:
            result = self._parent.apply(result)
            if not result:
                return result
        for gpu_filter in self._filters:
            result = gpu_filter.filter(result)
            if not result:
                return result
        return result


class PhaseFilter(GPUFilter):
    """Keeps GPUs whose phase is one of the allowed phases."""

    def __init__(self, *allowed_phases: GPUPhase | str) -> None:
        self._allowed = tuple(allowed_phases)

    def filter(self, gpus: Sequence[GPU]) -> list[GPU]:
        return [gpu for gpu in gpus if gpu.status.phase in self._allowed]


class ResourceFilter(GPUFilter):
    """Keeps GPUs with at least the required TFlops and VRAM available."""

    def __init__(self, required: Resource) -> None:
        self._required = required

    def filter(self, gpus: Sequence[GPU]) -> list[GPU]:
        return [gpu for gpu in gpus if self._fits(gpu)]

    def _fits(self, gpu: GPU) -> bool:
        available = gpu.status.available
        if available is None:
            return False
        return (
            available.tflops >= self._required.tflops
            and available.vram >= self._required.vram
        )


class SameNodeFilter(GPUFilter):
    """Keeps GPUs on nodes that hold at least ``count`` of them."""

    def __init__(self, count: int) -> None:
        self._count = count

    def filter(self, gpus: Sequence[GPU]) -> list[GPU]:
        if self._count <= 1:
            return list(gpus)
        by_node: dict[str, list[GPU]] = {}
        for gpu in gpus:
            node = gpu.node_name
            if node is not None:
                by_node.setdefault(node, []).append(gpu)
        result = [
            gpu
            for node_gpus in by_node.values()
            if len(node_gpus) >= self._count
            for gpu in node_gpus
        ]
        if not result:
            raise FilterError(f"no node has at least {self._count} available GPUs")
        return result