"""In-memory GPU allocator that keeps a store of GPUs in sync with the cluster."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from .filters import FilterError, FilterRegistry, PhaseFilter, ResourceFilter, SameNodeFilter
from .models import (
    GPU,
    GPU_POOL_KEY,
    GPUPhase,
    NamespacedName,
    ObjectNotFoundError,
    PlacementMode,
    Resource,
)
from .strategies import SelectionError, new_strategy

logger = logging.getLogger(__name__)


class AllocationError(Exception):
    """Raised when GPUs cannot be allocated or released."""


class ClusterClient(ABC):
    """Access to the cluster objects the allocator reads and writes."""

    @abstractmethod
    def list_gpus(self) -> list[GPU]:
        """Return every GPU known to the cluster."""

    @abstractmethod
    def get_pool_template(self, pool_name: str) -> str | None:
        """Return the scheduling template name of a pool.

        Raises ObjectNotFoundError if the pool does not exist.
        """

    @abstractmethod
    def get_placement_mode(self, template_name: str) -> PlacementMode | str | None:
        """Return the placement mode of a scheduling template.

        Raises ObjectNotFoundError if the template does not exist.
        """

    @abstractmethod
    def update_gpu_status(self, gpu: GPU) -> None:
        """Persist the status of a GPU."""


class GpuAllocator:
    """Allocates GPU resources from an in-memory store synced periodically."""

    def __init__(self, client: ClusterClient, sync_interval: float = 5.0) -> None:
        if client is None:
            raise ValueError("client cannot be None")
        self._client = client
        self._sync_interval = sync_interval
        self._filters = FilterRegistry().with_filters(PhaseFilter(GPUPhase.RUNNING))
        self._store: dict[NamespacedName, GPU] = {}
        self._store_lock = threading.RLock()
        self._dirty: set[NamespacedName] = set()
        self._dirty_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> GpuAllocator:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def alloc(self, pool_name: str, request: Resource, count: int) -> list[GPU]:
        """Allocate ``request`` on ``count`` GPUs of one pool (one node if count > 1)."""
        pool_gpus = self.list_gpus_from_pool(pool_name)

        registry = self._filters.with_filters(ResourceFilter(request))
        if count > 1:
            registry = registry.with_filters(SameNodeFilter(count))
        try:
            filtered = registry.apply(pool_gpus)
        except FilterError as exc:
            raise AllocationError(f"apply filters: {exc}") from exc
        if not filtered:
            raise AllocationError(f"no gpus available in pool {pool_name} after filtering")

        try:
            template = self._client.get_pool_template(pool_name)
        except ObjectNotFoundError as exc:
            raise AllocationError(f"get pool {pool_name}: {exc}") from exc
        mode = None
        if template is not None:
            try:
                mode = self._client.get_placement_mode(template)
            except ObjectNotFoundError as exc:
                raise AllocationError(
                    f"get scheduling config template {template}: {exc}"
                ) from exc

        try:
            selected = new_strategy(mode).select_gpus(filtered, count)
        except SelectionError as exc:
            raise AllocationError(f"select GPU: {exc}") from exc

        with self._store_lock:
            keys = [gpu.key() for gpu in selected]
            for key, chosen in zip(keys, selected):
                stored = self._store.get(key)
                if stored is None:
                    stored = chosen.copy()
                    self._store[key] = stored
                available = stored.status.available
                available.tflops = available.tflops - request.tflops
                available.vram = available.vram - request.vram
                self._mark_dirty(key)
            return [self._store[key].copy() for key in keys]

    def dealloc(self, request: Resource, gpu: GPU) -> None:
        """Return ``request`` to the available resources of ``gpu``."""
        key = gpu.key()
        with self._store_lock:
            stored = self._store.get(key)
            if stored is None:
                logger.info("GPU not found in store during deallocation: %s", key)
                raise AllocationError(f"GPU {key} not found in store")
            available = stored.status.available
            if available is None:
                raise AllocationError(f"GPU {key} has no available resources")
            available.tflops = available.tflops + request.tflops
            available.vram = available.vram + request.vram
            self._mark_dirty(key)

    def init_store(self) -> None:
        """Load every GPU from the cluster into the store."""
        logger.info("Initializing GPU store")
        gpus = self._client.list_gpus()
        with self._store_lock:
            self._store = {gpu.key(): gpu.copy() for gpu in gpus}
            logger.info("GPU store initialized with %d GPUs", len(self._store))

    def start(self) -> None:
        """Load the store and start syncing changes in the background."""
        if self._thread is not None and self._thread.is_alive():
            return
        self.init_store()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sync_loop, name="gpu-allocator-sync", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background sync."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _sync_loop(self) -> None:
        while not self._stop_event.wait(self._sync_interval):
            self.sync()
        logger.info("Stopping GPU allocator sync loop")

    def handle_gpu_create(self, gpu: GPU) -> None:
        """Add a newly created GPU to the store."""
        with self._store_lock:
            self._store[gpu.key()] = gpu.copy()
        logger.debug("Added GPU %s to store", gpu.name)

    def handle_gpu_delete(self, gpu: GPU) -> None:
        """Remove a deleted GPU from the store."""
        with self._store_lock:
            self._store.pop(gpu.key(), None)
        logger.debug("Removed GPU %s from store", gpu.name)

    def handle_gpu_update(self, gpu: GPU) -> None:
        """Replace a GPU in the store, keeping its locally tracked availability."""
        key = gpu.key()
        with self._store_lock:
            updated = gpu.copy()
            old = self._store.get(key)
            if old is not None and old.status.available is not None:
                updated.status.available = old.status.available
            self._store[key] = updated
        logger.debug("Updated GPU %s in store", gpu.name)

    def sync(self) -> list[NamespacedName]:
        """Push modified GPUs to the cluster; return the keys written successfully."""
        with self._dirty_lock:
            dirty = list(self._dirty)
            self._dirty = set()
        if not dirty:
            return []

        with self._store_lock:
            pending = [(key, self._store[key].copy()) for key in dirty if key in self._store]

        synced = []
        for key, gpu in pending:
            try:
                self._client.update_gpu_status(gpu)
            except Exception:
                self._mark_dirty(key)
                logger.exception("Failed to update GPU status of %s, will retry later", key)
            else:
                synced.append(key)
        return synced

    def list_gpus_from_pool(self, pool_name: str) -> list[GPU]:
        """Return copies of the stored GPUs that belong to a pool."""
        with self._store_lock:
            return [
                gpu.copy()
                for gpu in self._store.values()
                if gpu.labels.get(GPU_POOL_KEY, "") == pool_name
            ]

    def stored(self, key: NamespacedName) -> GPU | None:
        """Return a copy of the stored GPU with this key, if any."""
        with self._store_lock:
            gpu = self._store.get(key)
            return gpu.copy() if gpu is not None else None

    def _mark_dirty(self, key: NamespacedName) -> None:
        with self._dirty_lock:
            self._dirty.add(key)