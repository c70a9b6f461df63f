"""Project-management agent core: approvals, task graph, CLI agent runner."""

__version__ = "0.1.0"
