"""Runtime module for child process handling and termination events.

This module provides the detachable child handle used by the supervisor and
the per-run listener ledger for process termination signals.
"""

from __future__ import annotations

from .child_handle import ChildHandle, ChildState, ProcessSpec
from .listeners import ListenerRegistry, ProcessSignals, process_signals

__all__ = [
    "ChildHandle",
    "ChildState",
    "ListenerRegistry",
    "ProcessSignals",
    "ProcessSpec",
    "process_signals",
]
