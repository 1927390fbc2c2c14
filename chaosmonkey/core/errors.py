"""
Error taxonomy for run orchestration.

The classes double as builtin exception types so callers can keep the
``except ValueError`` / ``except KeyError`` mapping used by the API routes.
"""

from __future__ import annotations


class ChaosMonkeyError(Exception):
    """Base class for service errors."""


class InvalidSpecError(ChaosMonkeyError, ValueError):
    """Submitted run specification is malformed; no run was created."""


class RunNotFoundError(ChaosMonkeyError, KeyError):
    """Unknown run identifier."""

    def __init__(self, run_id: str) -> None:
        super().__init__(run_id)
        self.run_id = run_id

    def __str__(self) -> str:
        return f"run not found: {self.run_id}"


class EngineFailure(ChaosMonkeyError):
    """The load engine reported an error for a run."""


class InternalFault(ChaosMonkeyError):
    """Unexpected failure while wiring a run."""
