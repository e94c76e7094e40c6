# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/stages/models.py

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from kubeha.inventory.models import Node, NodeRole


class StagePhase(str, Enum):
    """Barriers the orchestrator runs in order."""
    PROVISION = "provision"       # per-node fan-out
    BOOTSTRAP = "bootstrap"       # single-node barrier on the primary
    JOIN = "join"                 # fan-out with the join credential
    ADDON = "addon"               # sequential, after every join finished

    @property
    def rank(self) -> int:
        return list(StagePhase).index(self)


class Placement(str, Enum):
    ALL = "all"
    PRIMARY = "primary"
    SECONDARY = "secondary"       # every node except the primary


class NodePhase(str, Enum):
    NOT_STARTED = "NotStarted"
    PACKAGES_READY = "PackagesReady"
    RUNTIME_PREPARED = "RuntimePrepared"
    CONTROL_PLANE_READY = "ControlPlaneReady"
    JOINED = "Joined"
    ADDONS_INSTALLED = "AddonsInstalled"


class Outcome(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"           # a prerequisite never succeeded
    SKIPPED = "skipped"           # never scheduled because the run was cancelled

    @property
    def terminal(self) -> bool:
        return self not in (Outcome.PENDING, Outcome.RUNNING)


ALL_ROLES: FrozenSet[NodeRole] = frozenset(NodeRole)


@dataclass(frozen=True)
class Stage:
    """
    Declarative unit of work. Which nodes it runs on is decided by ``roles``
    and ``placement``; ordering comes from ``predecessors``.
    """
    name: str
    phase: StagePhase
    predecessors: Tuple[str, ...] = ()
    roles: FrozenSet[NodeRole] = ALL_ROLES
    placement: Placement = Placement.ALL
    advances_to: Optional[NodePhase] = None
    # when no node has one of ``roles``, run on the primary instead
    fallback_to_primary: bool = False

    def _selects(self, node: Node) -> bool:
        if node.role not in self.roles:
            return False
        if self.placement is Placement.PRIMARY:
            return node.primary
        if self.placement is Placement.SECONDARY:
            return not node.primary
        return True

    def targets(self, nodes) -> List[Node]:
        nodes = list(nodes)
        selected = [n for n in nodes if self._selects(n)]
        if not selected and self.fallback_to_primary:
            selected = [n for n in nodes if n.primary]
        return selected

    def applies_to(self, node: Node, nodes) -> bool:
        return node in self.targets(nodes)


@dataclass
class StageAttempt:
    node: str                      # node address
    stage: str
    attempt: int                   # 1-based; 0 for blocked/skipped records
    outcome: Outcome = Outcome.PENDING
    error_kind: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageAttempt":
        return cls(**{**data, "outcome": Outcome(data["outcome"])})
