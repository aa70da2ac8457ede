"""DevOps-Guardian synthetic transaction scheduler and result evaluation engine."""

__version__ = "0.1.0"
