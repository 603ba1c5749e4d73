"""GPU pooling: filtering, placement, allocation, worker selection, annotation parsing and pod counting."""

__version__ = "0.1.0"

__all__ = [
    "models",
    "filters",
    "strategies",
    "allocator",
    "utils",
    "tf_parser",
    "worker",
    "pod_counter",
]