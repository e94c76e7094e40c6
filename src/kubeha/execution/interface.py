# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
from typing import Protocol
from .models import Command, ExecResult


class RemoteExecutor(Protocol):
    """
    Runs one command on a named node.
    Returns the exit status of commands that ran; raises TransientError when
    the transport failed or the per-attempt timeout expired.
    """

    def execute(self, address: str, command: Command, timeout: float) -> ExecResult: ...
