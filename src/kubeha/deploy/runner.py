# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/deploy/runner.py

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from kubeha.errors import LogicalError, RetryError, TransientError
from kubeha.execution.interface import RemoteExecutor
from kubeha.execution.models import StagePayload
from kubeha.inventory.models import Node
from kubeha.stages.models import Outcome, Stage, StageAttempt
from kubeha.utils.retry import retry

from ..observers.dispatcher import EventBus
from ..observers.events import (
    StageAttemptFailed,
    StageFailed,
    StageStarted,
    StageSucceeded,
    new_ctx,
    now,
)
from .state import ClusterState

log = logging.getLogger("kubeha")

# stderr/stdout kept in error details
_TAIL = 2000


@dataclass
class RunnerOptions:
    retry_attempts: int = 3
    backoff_seconds: float = 2.0
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 60.0
    attempt_timeout_seconds: float = 600.0


@dataclass
class StageResult:
    node: str
    stage: str
    outcome: Outcome
    attempts: int = 0
    outputs: Tuple[str, ...] = ()        # stdout per command; may hold secrets, never persisted
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED

    def __repr__(self) -> str:
        return (
            f"StageResult(node={self.node!r}, stage={self.stage!r}, "
            f"outcome={self.outcome.value}, attempts={self.attempts})"
        )


def _tail(text: str) -> str:
    text = text.strip()
    return text if len(text) <= _TAIL else "..." + text[-_TAIL:]


class StageRunner:
    """
    Executes one stage on one node: runs the payload through the remote
    executor, retries transient failures with exponential backoff, and
    records every attempt in the cluster state.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        state: ClusterState,
        *,
        options: Optional[RunnerOptions] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.state = state
        self.options = options or RunnerOptions()
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster="-")
        self._sleep = sleep

    def _ctx(self) -> dict:
        return {**self.run_ctx, "ts": now()}

    def _execute(self, node: Node, payload: StagePayload) -> Tuple[str, ...]:
        deadline = time.monotonic() + self.options.attempt_timeout_seconds
        outputs = []
        for cmd in payload:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransientError(
                    f"{node.address}: attempt exceeded {self.options.attempt_timeout_seconds}s"
                )
            res = self.executor.execute(node.address, cmd, remaining)
            if not res.ok:
                detail = payload.redact(_tail(res.stderr) or _tail(res.stdout))
                raise LogicalError(
                    f"`{cmd.describe()}` exited {res.exit_code}: {detail}",
                    exit_code=res.exit_code,
                    stdout=payload.redact(_tail(res.stdout)),
                    stderr=payload.redact(_tail(res.stderr)),
                )
            outputs.append(res.stdout)
        return tuple(outputs)

    def run(self, node: Node, stage: Stage, payload: StagePayload) -> StageResult:
        opts = self.options
        numbers = itertools.count(self.state.next_attempt(node.address, stage.name))
        made = 0
        started = time.monotonic()

        def _attempt() -> Tuple[str, ...]:
            nonlocal made
            made += 1
            rec = StageAttempt(
                node=node.address,
                stage=stage.name,
                attempt=next(numbers),
                outcome=Outcome.RUNNING,
                started_at=now(),
            )
            self.state.record(rec)
            self.bus.emit(StageStarted(node=node.address, stage=stage.name, attempt=rec.attempt, **self._ctx()))
            log.info("[%s] %s: attempt %d", node.address, stage.name, rec.attempt)
            try:
                outputs = self._execute(node, payload)
            except TransientError as e:
                self._finish(rec, Outcome.FAILED, e)
                raise
            except LogicalError as e:
                self._finish(rec, Outcome.FAILED, e, exit_code=e.exit_code)
                raise
            except Exception as e:
                # anything the transport does not classify is a real fault
                err = LogicalError(payload.redact(f"{type(e).__name__}: {e}"), exit_code=-1)
                self._finish(rec, Outcome.FAILED, err)
                raise err from e
            self._finish(rec, Outcome.SUCCEEDED)
            return outputs

        def _on_retry(attempt: int, exc: Exception) -> None:
            retrying = attempt < opts.retry_attempts
            log.warning(
                "[%s] %s: transient failure on attempt %d/%d%s: %s",
                node.address, stage.name, attempt, opts.retry_attempts,
                ", backing off" if retrying else "", exc,
            )
            self.bus.emit(StageAttemptFailed(
                node=node.address, stage=stage.name, attempt=attempt,
                error=str(exc), retrying=retrying, **self._ctx(),
            ))

        attempt_with_retry = retry(
            retries=opts.retry_attempts,
            delay=opts.backoff_seconds,
            backoff=opts.backoff_factor,
            max_delay=opts.max_backoff_seconds,
            retry_on=(TransientError,),
            on_retry=_on_retry,
            sleep=self._sleep,
        )(_attempt)

        try:
            outputs = attempt_with_retry()
        except RetryError as e:
            return self._failed(node, stage, made, TransientError.__name__, str(e.__cause__ or e))
        except LogicalError as e:
            return self._failed(node, stage, made, LogicalError.__name__, str(e))

        duration_ms = int((time.monotonic() - started) * 1000)
        log.info("[%s] %s: succeeded after %d attempt(s)", node.address, stage.name, made)
        self.bus.emit(StageSucceeded(
            node=node.address, stage=stage.name, attempts=made, duration_ms=duration_ms, **self._ctx(),
        ))
        return StageResult(node=node.address, stage=stage.name, outcome=Outcome.SUCCEEDED,
                           attempts=made, outputs=outputs)

    def _finish(self, rec: StageAttempt, outcome: Outcome, exc: Optional[Exception] = None,
                exit_code: Optional[int] = None) -> None:
        self.state.record(replace(
            rec,
            outcome=outcome,
            error_kind=type(exc).__name__ if exc else None,
            error=str(exc) if exc else None,
            exit_code=exit_code if exc else 0,
            finished_at=now(),
        ))

    def _failed(self, node: Node, stage: Stage, attempts: int, kind: str, error: str) -> StageResult:
        log.error("[%s] %s: failed after %d attempt(s): %s", node.address, stage.name, attempts, error)
        self.bus.emit(StageFailed(
            node=node.address, stage=stage.name, attempts=attempts,
            error_kind=kind, error=error, **self._ctx(),
        ))
        return StageResult(node=node.address, stage=stage.name, outcome=Outcome.FAILED,
                           attempts=attempts, error_kind=kind, error=error)
