# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import os
import subprocess

from kubeha.errors import TransientError
from .models import Command, ExecResult

log = logging.getLogger("kubeha")


class LocalExecutor:
    """Runs commands on this machine. Every address is treated as localhost."""

    def execute(self, address: str, command: Command, timeout: float) -> ExecResult:
        argv = list(command.argv)
        if command.sudo:
            argv = ["sudo", "-n", *argv]
        log.debug("[%s] $ %s", address, command.describe())
        try:
            cp = subprocess.run(
                argv,
                input=command.stdin,
                capture_output=True,
                text=True,
                timeout=timeout,
                env={**os.environ, **command.env},
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"{address}: command timed out after {timeout}s") from e
        except FileNotFoundError as e:
            return ExecResult(stdout="", stderr=str(e), exit_code=127)
        except OSError as e:
            raise TransientError(f"{address}: cannot start {argv[0]}: {e}") from e
        return ExecResult(stdout=cp.stdout, stderr=cp.stderr, exit_code=cp.returncode)
