"""Round allocation and attempt-lifecycle engine for branching relay drawing games."""

__version__ = "0.1.0"
