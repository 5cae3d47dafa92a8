#!/usr/bin/env python3
"""Generation-time error taxonomy for the CI suite compiler."""

from __future__ import annotations


class SuiteError(ValueError):
    """Generation failure with deterministic failure class."""

    def __init__(self, failure_class: str, message: str) -> None:
        self.failure_class = failure_class
        self.reason = message
        super().__init__(f"{failure_class}: {message}")


class SuiteConfigError(SuiteError):
    """Invalid check configuration (duplicate names, malformed operation specs)."""


class SuiteSerializationError(SuiteError):
    """Check content that cannot be rendered into the harness document."""
