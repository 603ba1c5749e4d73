"""Counting of TensorFusion-enabled pods in annotations of their owner."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Protocol

from .models import DOMAIN, OwnerReference
from .utils import object_hash

POD_COUNTER_KEY_ANNOTATION = f"{DOMAIN}/pod-counter-key"
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1
_INT_PATTERN = re.compile(r"[+-]?\d+")


class CounterError(Exception):
    """Raised when a pod counter cannot be read or written."""


class OwnerClient(Protocol):
    def get(self, api_version: str, kind: str, name: str, namespace: str) -> dict[str, Any]: ...

    def update(self, obj: dict[str, Any]) -> None: ...


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def counter_key(pod: Mapping[str, Any]) -> str:
    """Return the annotation key that counts pods like this one."""
    metadata = _metadata(pod)
    key = (metadata.get("annotations") or {}).get(POD_COUNTER_KEY_ANNOTATION)
    if key:
        return key
    template_hash = (metadata.get("labels") or {}).get(POD_TEMPLATE_HASH_LABEL)
    if template_hash:
        return f"{DOMAIN}/tf-counter-{template_hash}"
    return f"{DOMAIN}/tf-counter-{object_hash(pod)}"


def controller_owner_ref(pod: Mapping[str, Any]) -> OwnerReference | None:
    """Return the owner reference marked as controller, if any."""
    for ref in _metadata(pod).get("ownerReferences") or ():
        if ref.get("controller"):
            return OwnerReference(
                api_version=ref.get("apiVersion", ""),
                kind=ref.get("kind", ""),
                name=ref.get("name", ""),
                uid=ref.get("uid", ""),
                controller=True,
            )
    return None


def _parse_count(value: str) -> int:
    if _INT_PATTERN.fullmatch(value) is None or not (
        _INT32_MIN <= int(value) <= _INT32_MAX
    ):
        raise CounterError(f"invalid count annotation: {value}")
    return int(value)


class PodCounter:
    """Keeps a per-template pod count in the annotations of the controlling owner."""

    def __init__(self, client: OwnerClient) -> None:
        self.client = client

    def _owner(self, pod: Mapping[str, Any]) -> dict[str, Any]:
        ref = controller_owner_ref(pod)
        metadata = _metadata(pod)
        namespace = metadata.get("namespace", "")
        if ref is None:
            raise CounterError(
                "no controller owner reference found for pod "
                f"{namespace}/{metadata.get('name', '')}"
            )
        try:
            return self.client.get(ref.api_version, ref.kind, ref.name, namespace)
        except Exception as exc:
            raise CounterError(f"failed to get owner object: {exc}") from exc

    def get(self, pod: Mapping[str, Any]) -> tuple[int, str]:
        """Return the current count and the annotation key it is stored under."""
        owner = self._owner(pod)
        key = counter_key(pod)
        value = (_metadata(owner).get("annotations") or {}).get(key)
        if not value:
            return 0, key
        return _parse_count(value), key

    def increase(self, pod: Mapping[str, Any]) -> None:
        """Add one to the count."""
        self._adjust(pod, 1)

    def decrease(self, pod: Mapping[str, Any]) -> None:
        """Subtract one from the count, removing the key once it reaches zero."""
        self._adjust(pod, -1)

    def _adjust(self, pod: Mapping[str, Any], delta: int) -> None:
        owner = self._owner(pod)
        key = counter_key(pod)
        metadata = owner.setdefault("metadata", {})
        annotations = dict(metadata.get("annotations") or {})
        count = _parse_count(annotations.get(key) or "0") + delta
        if count <= 0:
            annotations.pop(key, None)
        else:
            annotations[key] = str(count)
        metadata["annotations"] = annotations
        try:
            self.client.update(owner)
        except Exception as exc:
            raise CounterError(f"failed to update owner annotation: {exc}") from exc