"""Placement strategies that pick GPUs among filtered candidates."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from .models import GPU, PlacementMode


class SelectionError(Exception):
    """Raised when a strategy cannot pick the requested GPUs."""


def _load(gpu: GPU) -> tuple[int, int]:
    available = gpu.status.available
    return available.vram.value(), available.tflops.value()


class Strategy(ABC):
    """Chooses ``count`` GPUs, all from one node when ``count`` exceeds one."""

    @abstractmethod
    def select_gpus(self, gpus: Sequence[GPU], count: int) -> list[GPU]:
        """Return the selected GPUs in preference order."""


class _RankingStrategy(Strategy):
    _prefer_higher: bool = False

    def select_gpus(self, gpus: Sequence[GPU], count: int) -> list[GPU]:
        if not gpus:
            raise SelectionError("no GPUs available")
        pick: Callable = max if self._prefer_higher else min
        if count <= 1:
            return [pick(gpus, key=_load)]

        by_node: dict[str, list[GPU]] = {}
        for gpu in gpus:
            node = gpu.node_name
            if node is not None:
                by_node.setdefault(node, []).append(gpu)

        candidates = {
            node: sorted(node_gpus, key=_load, reverse=self._prefer_higher)[:count]
            for node, node_gpus in by_node.items()
            if len(node_gpus) >= count
        }
        if not candidates:
            raise SelectionError(f"no node has at least {count} available GPUs")

        def score(node: str) -> int:
            chosen = candidates[node]
            total_vram = sum(_load(gpu)[0] for gpu in chosen)
            total_tflops = sum(_load(gpu)[1] for gpu in chosen)
            return total_vram * 1000 + total_tflops

        best = pick(candidates, key=score)
        return list(candidates[best])


class CompactFirst(_RankingStrategy):
    """Prefers the most utilized GPUs to pack workloads tightly."""

    _prefer_higher = False

    def select_gpus(self, gpus: Sequence[GPU], count: int) -> list[GPU]:
        return super().select_gpus(gpus, count)


class LowLoadFirst(_RankingStrategy):
    """Prefers the least utilized GPUs to spread workloads evenly."""

    _prefer_higher = True

    def select_gpus(self, gpus: Sequence[GPU], count: int) -> list[GPU]:
        return super().select_gpus(gpus, count)


def new_strategy(placement_mode: PlacementMode | str | None) -> Strategy:
    """Return the strategy for a placement mode; CompactFirst is the default."""
    if placement_mode == PlacementMode.LOW_LOAD_FIRST:
        return LowLoadFirst()
    return CompactFirst()