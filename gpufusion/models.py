"""Core data types: resource quantities, GPUs and object references."""

from __future__ import annotations

import math
import re
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from fractions import Fraction
from typing import Union

DOMAIN = "tensor-fusion.ai"
GPU_POOL_KEY = f"gpupool.{DOMAIN}/name"
LABEL_KEY_OWNER = f"{DOMAIN}/owner"

_DECIMAL_SI = "DecimalSI"
_BINARY_SI = "BinarySI"
_DECIMAL_EXPONENT = "DecimalExponent"

_BINARY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024**2,
    "Gi": 1024**3,
    "Ti": 1024**4,
    "Pi": 1024**5,
    "Ei": 1024**6,
}
_DECIMAL_SUFFIXES = {
    "n": Fraction(1, 10**9),
    "u": Fraction(1, 10**6),
    "m": Fraction(1, 10**3),
    "": Fraction(1),
    "k": Fraction(10**3),
    "M": Fraction(10**6),
    "G": Fraction(10**9),
    "T": Fraction(10**12),
    "P": Fraction(10**15),
    "E": Fraction(10**18),
}
_EXPONENT_SUFFIXES = {
    -9: "n", -6: "u", -3: "m", 0: "", 3: "k", 6: "M", 9: "G", 12: "T", 15: "P", 18: "E",
}
_PATTERN = re.compile(
    r"([+-]?)(\d+(?:\.\d*)?|\.\d+)(Ki|Mi|Gi|Ti|Pi|Ei|[eE][+-]?\d+|[numkMGTPE])?"
)


@dataclass(frozen=True, order=True)
class Quantity:
    """An exact resource amount, such as ``100`` TFlops or ``16Gi`` of memory."""

    amount: Fraction = Fraction(0)
    format: str = field(default=_DECIMAL_SI, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", Fraction(self.amount))

    def value(self) -> int:
        """Return the amount as an integer, rounded up."""
        return math.ceil(self.amount)

    def __add__(self, other: QuantityLike) -> Quantity:
        return Quantity(self.amount + _coerce(other).amount, self.format)

    def __sub__(self, other: QuantityLike) -> Quantity:
        return Quantity(self.amount - _coerce(other).amount, self.format)

    def __neg__(self) -> Quantity:
        return Quantity(-self.amount, self.format)

    def __str__(self) -> str:
        if self.amount == 0:
            return "0"
        sign = "-" if self.amount < 0 else ""
        magnitude = abs(self.amount)
        if self.format == _BINARY_SI and magnitude.denominator == 1:
            whole = magnitude.numerator
            for suffix, factor in reversed(_BINARY_SUFFIXES.items()):
                if whole % factor == 0:
                    return f"{sign}{whole // factor}{suffix}"
            return f"{sign}{whole}"
        mantissa = math.ceil(magnitude * 10**9)
        exponent = -9
        while mantissa % 1000 == 0 and exponent < 18:
            mantissa //= 1000
            exponent += 3
        if self.format == _DECIMAL_EXPONENT:
            return f"{sign}{mantissa}" + (f"e{exponent}" if exponent else "")
        return f"{sign}{mantissa}{_EXPONENT_SUFFIXES[exponent]}"

    def __repr__(self) -> str:
        return f"Quantity({str(self)!r})"


QuantityLike = Union[Quantity, str, int]


def parse_quantity(text: QuantityLike) -> Quantity:
    """Parse a quantity string such as ``"8"``, ``"500m"`` or ``"30Gi"``."""
    if isinstance(text, Quantity):
        return text
    if isinstance(text, int) and not isinstance(text, bool):
        return Quantity(text)
    match = _PATTERN.fullmatch(text) if isinstance(text, str) else None
    if match is None:
        raise ValueError(f"invalid quantity: {text!r}")
    sign, number, suffix = match.groups()
    suffix = suffix or ""
    amount = Fraction(number)
    if suffix in _BINARY_SUFFIXES:
        amount *= _BINARY_SUFFIXES[suffix]
        fmt = _BINARY_SI
    elif suffix[:1] in ("e", "E") and len(suffix) > 1:
        amount *= Fraction(10) ** int(suffix[1:])
        fmt = _DECIMAL_EXPONENT
    else:
        amount *= _DECIMAL_SUFFIXES[suffix]
        fmt = _DECIMAL_SI
    if sign == "-":
        amount = -amount
    return Quantity(amount, fmt)


def _coerce(value: QuantityLike) -> Quantity:
    return parse_quantity(value)


@dataclass
class Resource:
    """A pair of compute (TFlops) and memory (VRAM bytes) amounts."""

    tflops: Quantity = field(default_factory=Quantity)
    vram: Quantity = field(default_factory=Quantity)

    def __post_init__(self) -> None:
        self.tflops = _coerce(self.tflops)
        self.vram = _coerce(self.vram)


class GPUPhase(str, Enum):
    """Operational phase of a GPU."""

    PENDING = "Pending"
    RUNNING = "Running"


class PlacementMode(str, Enum):
    """How GPUs are chosen among the candidates."""

    COMPACT_FIRST = "CompactFirst"
    LOW_LOAD_FIRST = "LowLoadFirst"


@dataclass(frozen=True)
class NamespacedName:
    """The identity of a namespaced object."""

    name: str
    namespace: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class GPUStatus:
    """Observed state of a GPU."""

    phase: Union[GPUPhase, str] = ""
    available: Resource | None = None
    capacity: Resource | None = None
    gpu_model: str = ""
    uuid: str = ""
    node_selector: dict[str, str] = field(default_factory=dict)


@dataclass
class GPU:
    """A GPU with its labels and status."""

    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    status: GPUStatus = field(default_factory=GPUStatus)

    @property
    def node_name(self) -> str | None:
        """Name of the node owning this GPU, if labelled."""
        return self.labels.get(LABEL_KEY_OWNER)

    @property
    def pool_name(self) -> str | None:
        """Name of the pool this GPU belongs to, if labelled."""
        return self.labels.get(GPU_POOL_KEY)

    def key(self) -> NamespacedName:
        return NamespacedName(self.name, self.namespace)

    def copy(self) -> GPU:
        """Return a deep copy that shares no state with this GPU."""
        return deepcopy(self)


@dataclass
class OwnerReference:
    """A reference from an object to the object that owns it."""

    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: bool | None = None


class ObjectNotFoundError(LookupError):
    """Raised when a requested cluster object does not exist."""