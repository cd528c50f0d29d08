"""Device lists, topology-aware allocation and container wiring for MLU accelerators."""

__version__ = "0.1.0"