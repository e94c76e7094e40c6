# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/deploy/state.py

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from kubeha.errors import ConfigError
from kubeha.inventory.models import Node, NodeRole
from kubeha.stages.models import NodePhase, Outcome, Stage, StageAttempt

log = logging.getLogger("kubeha")

STATE_VERSION = 1

_Key = Tuple[str, str]


class ClusterState:
    """
    (node, stage) -> latest StageAttempt, plus the full attempt history.

    Every mutation goes through ``record`` under one lock. When ``path`` is
    set, the state is written to disk after each mutation.
    """

    def __init__(self, attempts: Iterable[StageAttempt] = (), *, path: Optional[Path] = None):
        self._lock = threading.RLock()
        self._history: List[StageAttempt] = []
        self._latest: Dict[_Key, StageAttempt] = {}
        self._credential = None
        self.path = Path(path) if path else None
        for a in attempts:
            self._apply(a)

    # ------------------ mutation ------------------

    def _apply(self, attempt: StageAttempt) -> None:
        key = (attempt.node, attempt.stage)
        prev = self._latest.get(key)
        if prev is not None and prev.attempt == attempt.attempt and prev.attempt > 0:
            # same attempt changing outcome (running -> succeeded/failed)
            self._history[self._history.index(prev)] = attempt
        else:
            self._history.append(attempt)
        self._latest[key] = attempt

    def record(self, attempt: StageAttempt) -> None:
        with self._lock:
            self._apply(attempt)
            if self.path is not None:
                self.save(self.path)

    # ------------------ queries ------------------

    def latest(self, node: str, stage: str) -> Optional[StageAttempt]:
        with self._lock:
            return self._latest.get((node, stage))

    def succeeded(self, node: str, stage: str) -> bool:
        a = self.latest(node, stage)
        return a is not None and a.outcome is Outcome.SUCCEEDED

    def next_attempt(self, node: str, stage: str) -> int:
        with self._lock:
            numbers = [a.attempt for a in self._history if a.node == node and a.stage == stage]
        return max(numbers, default=0) + 1

    def history(self, node: Optional[str] = None, stage: Optional[str] = None) -> List[StageAttempt]:
        with self._lock:
            return [
                a for a in self._history
                if (node is None or a.node == node) and (stage is None or a.stage == stage)
            ]

    def attempts(self) -> List[StageAttempt]:
        """Latest attempt for every (node, stage)."""
        with self._lock:
            return list(self._latest.values())

    def missing_prerequisites(
        self,
        stage: Stage,
        node: Node,
        nodes: Sequence[Node],
        by_name: Mapping[str, Stage],
    ) -> List[str]:
        """
        Unmet predecessors of ``stage`` on ``node`` as ``stage@address`` strings.
        A predecessor that also runs on ``node`` must have succeeded there;
        otherwise it must have succeeded on every node it targets.
        """
        missing: List[str] = []
        for name in stage.predecessors:
            pred = by_name[name]
            targets = pred.targets(nodes)
            check = [node] if node in targets else targets
            for t in check:
                if not self.succeeded(t.address, name):
                    missing.append(f"{name}@{t.address}")
        return missing

    # ------------------ join credential (memory only) ------------------

    @property
    def credential(self):
        with self._lock:
            return self._credential

    def remember_credential(self, credential) -> None:
        with self._lock:
            if self._credential is not None:
                raise RuntimeError("join credential already issued for this run")
            self._credential = credential

    def invalidate_credential(self) -> None:
        with self._lock:
            self._credential = None

    # ------------------ persistence ------------------

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "version": STATE_VERSION,
                "attempts": [a.to_dict() for a in self._history],
            }

    @classmethod
    def from_dict(cls, data: dict, *, path: Optional[Path] = None) -> "ClusterState":
        if data.get("version") != STATE_VERSION:
            raise ConfigError(f"unsupported state version {data.get('version')!r}")
        try:
            attempts = [StageAttempt.from_dict(a) for a in data.get("attempts", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"corrupt state record: {e}") from e
        return cls(attempts, path=path)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(self.to_dict(), indent=2)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    @classmethod
    def load(cls, path: Path, *, autosave: bool = True) -> "ClusterState":
        path = Path(path)
        if not path.exists():
            log.debug("no state at %s, starting fresh", path)
            return cls(path=path if autosave else None)
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"cannot read state file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"state file {path} must hold a JSON object")
        return cls.from_dict(data, path=path if autosave else None)


def node_phase(state: ClusterState, node: Node, order: Sequence[Stage], nodes: Sequence[Node]) -> NodePhase:
    """
    Furthest NodePhase the node reached: a phase counts once every stage
    advancing to it has succeeded on the node, and every earlier phase counts.
    """
    required: Dict[NodePhase, List[str]] = {}
    for s in order:
        if s.advances_to is not None and s.applies_to(node, nodes):
            required.setdefault(s.advances_to, []).append(s.name)

    reached = NodePhase.NOT_STARTED
    for phase, names in required.items():
        if not all(state.succeeded(node.address, n) for n in names):
            break
        reached = phase
    if reached is NodePhase.JOINED and node.role is NodeRole.CONTROL_PLANE:
        return NodePhase.CONTROL_PLANE_READY
    return reached


def in_cluster(node: Node, phase: NodePhase) -> bool:
    """Whether the node is a working control-plane or worker member."""
    return node.role is not NodeRole.EDGE and phase in (NodePhase.CONTROL_PLANE_READY, NodePhase.JOINED, NodePhase.ADDONS_INSTALLED)
