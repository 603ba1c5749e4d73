"""Reconciliation helpers: finalizers, back-off, debouncing, hashing and owners."""

from __future__ import annotations

import dataclasses
import json
import os
import random
import time
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, TypeVar, Union

from .models import DOMAIN, NamespacedName, OwnerReference, Quantity

FINALIZER = f"{DOMAIN}/finalizer"
NAMESPACE_ENV = "POD_NAMESPACE"
NAMESPACE_DEFAULT = "tensor-fusion-sys"
DEBOUNCE_KEY_SUFFIX = ":in_queue"
DEBOUNCE_INTERVAL = 5.0

_BACKOFF_BASE = 3.0
_BACKOFF_MAX = 60.0
_BACKOFF_FACTOR = 2.0
_BACKOFF_MAX_RETRIES = 10

_FNV_OFFSET = 0xCBF29CE484222325
_FNV_PRIME = 0x100000001B3
_MASK64 = (1 << 64) - 1


class NextLoop(Exception):
    """Stop the current reconciliation and return its associated result."""


class TerminateLoop(Exception):
    """Stop the current reconciliation without requeueing."""


@dataclass(frozen=True)
class DebounceResult:
    """Outcome of a debounce check; ``wait`` is in seconds."""

    run_now: bool
    already_queued: bool
    wait: float


class FinalizedObject(Protocol):
    deletion_timestamp: Any
    finalizers: list[str]


class UpdatingClient(Protocol):
    def update(self, obj: Any) -> None: ...


class OwnerLookupClient(Protocol):
    def get(self, api_version: str, kind: str, name: str, namespace: str) -> Any: ...


T = TypeVar("T", bound=FinalizedObject)


def escape_json_pointer(s: str) -> str:
    """Escape a JSON Pointer reference token: ``~`` as ``~0``, ``/`` as ``~1``."""
    return s.replace("~", "~0").replace("/", "~1")


def handle_finalizer(
    obj: T,
    client: UpdatingClient,
    delete_hook: Callable[[T], bool],
) -> bool:
    """Add or remove the finalizer on ``obj`` as its lifecycle requires.

    Returns True when the caller should stop and wait for the next reconcile.
    Errors from ``delete_hook`` or ``client.update`` propagate.
    """
    if obj.deletion_timestamp is not None:
        if FINALIZER in obj.finalizers:
            if delete_hook(obj):
                obj.finalizers.remove(FINALIZER)
                client.update(obj)
                return True
        return False

    if FINALIZER not in obj.finalizers:
        obj.finalizers.append(FINALIZER)
        client.update(obj)
        return True
    return False


def exponential_backoff_with_jitter(retry_count: int) -> float:
    """Return a jittered exponential delay in seconds, clamped to 3..60."""
    retry_count = min(retry_count, _BACKOFF_MAX_RETRIES)
    backoff = _BACKOFF_BASE * _BACKOFF_FACTOR**retry_count
    delay = random.random() * backoff
    return min(max(delay, _BACKOFF_BASE), _BACKOFF_MAX)


def current_namespace() -> str:
    """Return the namespace from the environment, or the default one."""
    return os.environ.get(NAMESPACE_ENV) or NAMESPACE_DEFAULT


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Quantity):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"cannot encode {type(obj).__name__} as JSON")


def _to_json(obj: Any) -> bytes:
    text = json.dumps(
        obj, default=_json_default, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return text.encode("utf-8")


def _fnv1a(state: int, data: bytes) -> int:
    for byte in data:
        state = ((state ^ byte) * _FNV_PRIME) & _MASK64
    return state


def object_hash(*args: Any) -> str:
    """Return a 64-bit FNV-1a hex digest of the JSON form of the objects."""
    state = _FNV_OFFSET
    for obj in args:
        encoded = _to_json(obj)
        state = _fnv1a(state, f"{len(encoded)}:".encode("ascii"))
        state = _fnv1a(state, encoded)
    return f"{state:016x}"


def debounced_reconcile_check(
    last_processed: MutableMapping[str, Any],
    name: Union[NamespacedName, str],
    now: float | None = None,
) -> DebounceResult:
    """Decide whether an object may be reconciled now or must wait.

    ``last_processed`` maps object keys to the time (in seconds) they were last
    processed; ``now`` defaults to the monotonic clock.
    """
    if now is None:
        now = time.monotonic()
    key = str(name)
    in_queue_key = key + DEBOUNCE_KEY_SUFFIX

    last = last_processed.get(key)
    if isinstance(last, (int, float)) and not isinstance(last, bool):
        elapsed = now - last
        if elapsed < DEBOUNCE_INTERVAL:
            wait = DEBOUNCE_INTERVAL - elapsed
            if in_queue_key in last_processed:
                return DebounceResult(False, True, wait)
            last_processed[in_queue_key] = now
            return DebounceResult(False, False, wait)

    last_processed.pop(in_queue_key, None)
    last_processed[key] = now
    return DebounceResult(True, False, 0.0)


def is_pod_condition_true(
    conditions: Iterable[Mapping[str, Any]], condition_type: str
) -> bool:
    """Return whether the first condition of the given type has status "True"."""
    for condition in conditions:
        if condition.get("type") == condition_type:
            return condition.get("status") == "True"
    return False


def is_pod_terminated(phase: str) -> bool:
    """Return whether a pod phase is final."""
    return phase in ("Failed", "Succeeded")


def find_root_owner_reference(
    client: OwnerLookupClient, namespace: str, obj: Any
) -> OwnerReference | None:
    """Follow first owner references upward from ``obj``.

    Returns the first reference whose object cannot be fetched, or None when
    the chain ends at an object that has no owners.
    """
    current = obj
    while True:
        owners = list(getattr(current, "owner_references", None) or ())
        if not owners:
            return None
        owner_ref = owners[0]
        try:
            current = client.get(
                owner_ref.api_version, owner_ref.kind, owner_ref.name, namespace
            )
        except Exception:
            return owner_ref
        if current is None:
            return owner_ref