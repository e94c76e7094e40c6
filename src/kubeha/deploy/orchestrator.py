# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/deploy/orchestrator.py

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from kubeha.errors import DependencyBlockedError, LogicalError
from kubeha.execution.interface import RemoteExecutor
from kubeha.inventory.loader import Inventory
from kubeha.inventory.models import Node, NodeRole
from kubeha.stages.catalog import default_stages
from kubeha.stages.driver import NodeDriver
from kubeha.stages.models import NodePhase, Outcome, Stage, StageAttempt, StagePhase

from ..observers.dispatcher import EventBus
from ..observers.events import (
    RunCancelled,
    RunSummary,
    StageBlocked,
    StageFailed,
    StageSkipped,
    new_ctx,
    now,
)
from .addons import AddonInstaller, control_plane_ready
from .join import ISSUE_CREDENTIAL, JoinCoordinator
from .planner import applicability, plan as plan_stages
from .runner import RunnerOptions, StageRunner
from .state import ClusterState, in_cluster, node_phase

log = logging.getLogger("kubeha")


_MEMBER_PHASES = (NodePhase.CONTROL_PLANE_READY, NodePhase.JOINED, NodePhase.ADDONS_INSTALLED)


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class OrchestratorOptions:
    concurrency: Optional[int] = None          # None -> one worker per node
    runner: RunnerOptions = field(default_factory=RunnerOptions)
    min_ready_control_planes: int = 1


@dataclass
class NodeReport:
    address: str
    role: NodeRole
    primary: bool
    phase: NodePhase


@dataclass
class RunReport:
    status: RunStatus
    attempts: List[StageAttempt] = field(default_factory=list)   # latest per (node, stage), plan order
    nodes: List[NodeReport] = field(default_factory=list)
    cancelled: bool = False
    fatal: Optional[str] = None

    def count(self, outcome: Outcome) -> int:
        return sum(1 for a in self.attempts if a.outcome is outcome)

    def cluster_members(self) -> List[str]:
        return [n.address for n in self.nodes if n.role is not NodeRole.EDGE and n.phase in _MEMBER_PHASES]

    def outcome(self, node: str, stage: str) -> Optional[Outcome]:
        for a in self.attempts:
            if a.node == node and a.stage == stage:
                return a.outcome
        return None

    def summary(self) -> str:
        return (
            f"status={self.status.value} succeeded={self.count(Outcome.SUCCEEDED)} "
            f"failed={self.count(Outcome.FAILED)} blocked={self.count(Outcome.BLOCKED)} "
            f"skipped={self.count(Outcome.SKIPPED)}"
        )


def build_report(
    state: ClusterState,
    order: Sequence[Stage],
    inventory: Inventory,
    *,
    cancelled: bool = False,
    fatal: Optional[str] = None,
) -> RunReport:
    """
    Report over every applicable (node, stage). Success needs all of them
    succeeded; a primary that never finished its bootstrap stages is a failure.
    """
    nodes = inventory.nodes
    attempts: List[StageAttempt] = []
    for s in order:
        for n in s.targets(nodes):
            attempts.append(
                state.latest(n.address, s.name)
                or StageAttempt(node=n.address, stage=s.name, attempt=0)
            )

    primary = inventory.primary
    bootstrap_broken = any(
        a.outcome in (Outcome.FAILED, Outcome.BLOCKED)
        for a in attempts
        if a.node == primary.address
        and any(s.name == a.stage and s.phase is StagePhase.BOOTSTRAP for s in order)
    )

    if fatal or bootstrap_broken:
        status = RunStatus.FAILED
    elif all(a.outcome is Outcome.SUCCEEDED for a in attempts):
        status = RunStatus.SUCCESS
    else:
        status = RunStatus.PARTIAL

    return RunReport(
        status=status,
        attempts=attempts,
        nodes=[
            NodeReport(n.address, n.role, n.primary, node_phase(state, n, order, nodes))
            for n in nodes
        ],
        cancelled=cancelled,
        fatal=fatal,
    )


class ClusterOrchestrator:
    """
    Drives the inventory through the stage DAG:

      1. provision stages fan out per node, best effort
      2. bootstrap stages run on the primary; failure there is fatal
      3. the join credential is issued once and join stages fan out
      4. after every join finished, addon stages run one by one
    """

    def __init__(
        self,
        inventory: Inventory,
        executor: RemoteExecutor,
        driver: NodeDriver,
        *,
        stages: Optional[Sequence[Stage]] = None,
        state: Optional[ClusterState] = None,
        options: Optional[OrchestratorOptions] = None,
        observers: Optional[List] = None,
        cluster_name: str = "kubeha",
        run_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.inventory = inventory
        self.driver = driver
        self.stages = tuple(stages if stages is not None else default_stages())
        self.state = state if state is not None else ClusterState()
        self.options = options or OrchestratorOptions()
        self.bus = EventBus(observers or [])
        self.run_ctx = new_ctx(cluster=cluster_name, run_id=run_id)
        self.runner = StageRunner(
            executor, self.state,
            options=self.options.runner, bus=self.bus, run_ctx=self.run_ctx, sleep=sleep,
        )
        self.join = JoinCoordinator(self.runner, self.state, driver, bus=self.bus, run_ctx=self.run_ctx)
        self._cancel = threading.Event()
        self._order: List[Stage] = []
        self._by_name: Dict[str, Stage] = {}

    # ------------------ cancellation ------------------

    def cancel(self, reason: str = "cancelled by user") -> None:
        """Stop scheduling new stages. Commands already running are left to finish."""
        if self._cancel.is_set():
            return
        self._cancel.set()
        log.warning("cancellation requested: %s", reason)
        self.bus.emit(RunCancelled(reason=reason, **self._ctx()))

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------ planning ------------------

    def _ctx(self) -> dict:
        return {**self.run_ctx, "ts": now()}

    def plan(self) -> List[Stage]:
        order = plan_stages(self.stages, bus=self.bus, run_ctx=self._ctx())
        self._order = order
        self._by_name = {s.name: s for s in order}
        return order

    def _preflight(self, order: Sequence[Stage]) -> None:
        # build every payload that does not need the credential, so bad
        # config surfaces before the first remote call
        for s in order:
            if s.phase is StagePhase.JOIN:
                continue
            for n in s.targets(self.inventory.nodes):
                self.driver.payload(s, n)

    def dry_run(self) -> Dict[str, List[str]]:
        order = self.plan()
        self._preflight(order)
        return applicability(order, self.inventory)

    # ------------------ scheduling ------------------

    def _mark(self, stage: Stage, node: Node, outcome: Outcome, error: Optional[Exception] = None) -> StageAttempt:
        rec = StageAttempt(
            node=node.address,
            stage=stage.name,
            attempt=0,
            outcome=outcome,
            error_kind=type(error).__name__ if error else None,
            error=str(error) if error else None,
            finished_at=now(),
        )
        self.state.record(rec)
        return rec

    def _schedule(
        self,
        stage: Stage,
        node: Node,
        extra_missing: Sequence[str] = (),
        execute: Optional[Callable[[Stage, Node], object]] = None,
    ) -> StageAttempt:
        latest = self.state.latest(node.address, stage.name)
        if latest is not None and latest.outcome is Outcome.SUCCEEDED:
            log.info("[%s] %s: already succeeded, skipping", node.address, stage.name)
            return latest

        if self.cancelled:
            self.bus.emit(StageSkipped(node=node.address, stage=stage.name, reason="run cancelled", **self._ctx()))
            return self._mark(stage, node, Outcome.SKIPPED)

        missing = self.state.missing_prerequisites(stage, node, self.inventory.nodes, self._by_name)
        missing += [m for m in extra_missing if m]
        if missing:
            err = DependencyBlockedError(
                f"{stage.name} on {node.address} blocked by: {', '.join(missing)}",
                missing=missing,
            )
            log.warning("[%s] %s", node.address, err)
            self.bus.emit(StageBlocked(node=node.address, stage=stage.name, missing=list(missing), **self._ctx()))
            return self._mark(stage, node, Outcome.BLOCKED, err)

        try:
            if execute is not None:
                execute(stage, node)
            else:
                self.runner.run(node, stage, self.driver.payload(stage, node))
        except Exception as e:
            # contain the failure to this node
            log.exception("[%s] %s: unexpected error", node.address, stage.name)
            self.state.record(StageAttempt(
                node=node.address,
                stage=stage.name,
                attempt=self.state.next_attempt(node.address, stage.name),
                outcome=Outcome.FAILED,
                error_kind=type(e).__name__,
                error=str(e),
                finished_at=now(),
            ))
            self.bus.emit(StageFailed(node=node.address, stage=stage.name, attempts=0,
                                      error_kind=type(e).__name__, error=str(e), **self._ctx()))
        return self.state.latest(node.address, stage.name)

    def _fan_out(self, items: Sequence, fn: Callable[[object], object]) -> None:
        if not items:
            return
        limit = self.options.concurrency or len(self.inventory)
        with ThreadPoolExecutor(max_workers=max(1, min(limit, len(items))),
                                thread_name_prefix="kubeha") as pool:
            futures = [pool.submit(fn, item) for item in items]
            for f in futures:
                f.result()

    def _phase(self, phase: StagePhase) -> List[Stage]:
        return [s for s in self._order if s.phase is phase]

    def _ready_control_planes(self) -> int:
        nodes = self.inventory.nodes
        return sum(
            1 for n in nodes
            if n.role is NodeRole.CONTROL_PLANE and in_cluster(n, node_phase(self.state, n, self._order, nodes))
        )

    # ------------------ phases ------------------

    def _provision(self) -> None:
        nodes = self.inventory.nodes
        stages = self._phase(StagePhase.PROVISION)

        def _chain(node: Node) -> None:
            for s in stages:
                if s.applies_to(node, nodes):
                    self._schedule(s, node)

        self._fan_out(nodes, _chain)

    def _bootstrap(self) -> Optional[str]:
        nodes = self.inventory.nodes
        fatal = None
        for s in self._phase(StagePhase.BOOTSTRAP):
            for n in s.targets(nodes):
                a = self._schedule(s, n)
                if a.outcome in (Outcome.FAILED, Outcome.BLOCKED) and fatal is None:
                    fatal = f"{s.name}@{n.address}"
        return fatal

    def _join(self) -> None:
        nodes = self.inventory.nodes
        primary = self.inventory.primary
        pending = [
            (s, n)
            for s in self._phase(StagePhase.JOIN)
            for n in s.targets(nodes)
            if not self.state.succeeded(n.address, s.name)
        ]
        if not pending:
            return

        ready = [
            n for s, n in pending
            if not self.state.missing_prerequisites(s, n, nodes, self._by_name)
        ]
        credential = None
        blocked_by = None
        if ready and not self.cancelled:
            try:
                credential = self.join.obtain_credential(primary, ready)
            except LogicalError as e:
                log.error("join credential unavailable: %s", e)
                blocked_by = f"{ISSUE_CREDENTIAL}@{primary.address}"

        def _distribute(stage: Stage, node: Node) -> None:
            self.join.distribute(credential, stage, node)

        def _one(item) -> None:
            s, n = item
            self._schedule(s, n, extra_missing=[blocked_by] if blocked_by else (), execute=_distribute)

        self._fan_out(pending, _one)

    def _block_rest(self, fatal: str) -> None:
        nodes = self.inventory.nodes
        for s in self._order:
            if s.phase in (StagePhase.JOIN, StagePhase.ADDON):
                for n in s.targets(nodes):
                    self._schedule(s, n, extra_missing=[fatal])

    def _addons(self) -> None:
        installer = AddonInstaller(
            self._phase(StagePhase.ADDON),
            lambda stage, node, missing: self._schedule(stage, node, extra_missing=missing),
            default_prerequisites=[
                control_plane_ready(self._ready_control_planes, self.options.min_ready_control_planes),
            ],
        )
        installer.install(self.inventory.nodes)

    # ------------------ entry point ------------------

    def run(self) -> RunReport:
        """
        Run every stage that has not already succeeded. Raises ConfigError
        before any remote call when the DAG or payloads are invalid.
        """
        order = self.plan()
        self._preflight(order)
        log.info("plan: %s", " -> ".join(s.name for s in order))

        self._provision()
        fatal = self._bootstrap()
        if fatal is not None:
            log.error("primary bootstrap failed (%s); no node will join", fatal)
            self._block_rest(fatal)
        else:
            self._join()
            self._addons()

        report = build_report(self.state, order, self.inventory, cancelled=self.cancelled, fatal=fatal)
        log.info("run finished: %s", report.summary())
        self.bus.emit(RunSummary(
            status=report.status.value,
            succeeded=report.count(Outcome.SUCCEEDED),
            failed=report.count(Outcome.FAILED),
            blocked=report.count(Outcome.BLOCKED),
            skipped=report.count(Outcome.SKIPPED),
            **self._ctx(),
        ))
        return report
