# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/errors.py
from __future__ import annotations

from typing import Sequence


class KubehaError(RuntimeError):
    """Base class for orchestration failures."""


class ConfigError(KubehaError):
    """Bad inventory, config document or stage DAG. Raised before any remote call."""


class TransientError(KubehaError):
    """Network, connection or timeout failure. Eligible for retry."""


class LogicalError(KubehaError):
    """The remote command ran and reported failure. Never retried."""

    def __init__(self, message: str, *, exit_code: int, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class DependencyBlockedError(KubehaError):
    """A stage could not run because a prerequisite never succeeded."""

    def __init__(self, message: str, *, missing: Sequence[str] = ()):
        super().__init__(message)
        self.missing = tuple(missing)


class RetryError(KubehaError):
    """Raised when every attempt of a retried operation failed transiently."""

    def __init__(self, message: str, *, attempts: int):
        super().__init__(message)
        self.attempts = attempts
