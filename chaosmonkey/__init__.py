"""Chaos Monkey: HTTP load-test runner with live telemetry."""

__version__ = "0.1.0"
