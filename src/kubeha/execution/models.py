# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/execution/models.py

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple


@dataclass(frozen=True, repr=False)
class Command:
    """
    One remote command as an argument vector. Never an interpolated shell string.
    """
    argv: Tuple[str, ...]
    sudo: bool = False
    stdin: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=dict)
    secret: bool = False          # argv or stdin carries a credential

    def render(self) -> str:
        """Shell-safe command line for transports that only take a string."""
        parts = list(self.argv)
        if self.env:
            parts = ["env", *(f"{k}={v}" for k, v in self.env.items()), *parts]
        if self.sudo:
            parts = ["sudo", "-n", *parts]
        return shlex.join(parts)

    def describe(self) -> str:
        """Loggable form; credentials are replaced by a marker."""
        if self.secret:
            return f"{self.argv[0]} <redacted>"
        return self.render()

    def __repr__(self) -> str:
        return f"Command({self.describe()!r})"


def sh(script: str, *args: str, sudo: bool = False, stdin: Optional[str] = None,
       secret: bool = False) -> Command:
    """
    Run a fixed POSIX shell snippet. Values reach it only as positional parameters ($1, $2...).
    """
    return Command(argv=("sh", "-c", script, "sh", *args), sudo=sudo, stdin=stdin, secret=secret)


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class StagePayload:
    """Ordered commands implementing one stage on one node. Each must be idempotent."""
    commands: Tuple[Command, ...]
    redactions: Tuple[str, ...] = field(default=(), repr=False)   # strings masked in error text

    def redact(self, text: str) -> str:
        for secret in self.redactions:
            if secret:
                text = text.replace(secret, "***")
        return text

    def __iter__(self):
        return iter(self.commands)

    def __len__(self) -> int:
        return len(self.commands)
