"""
fleet_builder — build-fleet orchestrator.

Dispatches one remote build per platform, serializes jobs that share a
machine, and supervises the whole process tree of a run.
"""

__version__ = "0.1.0"
TOOL_NAME = "fleet_builder"
RECEIPT_VERSION = "v1"
