# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections import deque
from typing import Dict, List, Optional, Sequence, Set

from kubeha.errors import ConfigError
from kubeha.inventory.loader import Inventory
from kubeha.stages.models import Stage

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed, PlanFailed, new_ctx


class UnknownDependencyError(ConfigError):
    pass


class CyclicDependencyError(ConfigError):
    pass


class PhaseOrderError(ConfigError):
    pass


def _validate_stages(stages: Sequence[Stage]) -> None:
    names: Set[str] = set()
    for s in stages:
        if s.name in names:
            raise ConfigError(f"Stage '{s.name}' is declared twice")
        names.add(s.name)
        if not s.roles:
            raise ConfigError(f"Stage '{s.name}' applies to no role")

    by_name = {s.name: s for s in stages}
    for s in stages:
        for d in s.predecessors:
            if d not in names:
                raise UnknownDependencyError(
                    f"Stage '{s.name}' depends on unknown stage '{d}'"
                )
            # a stage may only wait on its own barrier or an earlier one
            if by_name[d].phase.rank > s.phase.rank:
                raise PhaseOrderError(
                    f"Stage '{s.name}' ({s.phase.value}) cannot depend on "
                    f"'{d}' from the later {by_name[d].phase.value} phase"
                )


def plan(
    stages: Sequence[Stage],
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> List[Stage]:
    """
    Stable topological sort of stages based on 'predecessors'.
    Ties are broken by phase, then declaration order.
    Emits PlanComputed / PlanFailed if an EventBus is provided.
    """
    ctx = run_ctx or new_ctx(cluster="-")
    try:
        _validate_stages(stages)

        position: Dict[str, int] = {s.name: i for i, s in enumerate(stages)}
        by_name: Dict[str, Stage] = {s.name: s for s in stages}
        indeg: Dict[str, int] = {s.name: len(set(s.predecessors)) for s in stages}

        def _key(name: str):
            return (by_name[name].phase.rank, position[name])

        queue = deque(sorted([n for n, deg in indeg.items() if deg == 0], key=_key))
        order: List[Stage] = []

        while queue:
            n = queue.popleft()
            order.append(by_name[n])
            for s in stages:
                if n in s.predecessors:
                    indeg[s.name] -= 1
                    if indeg[s.name] == 0:
                        queue.append(s.name)
                        queue = deque(sorted(queue, key=_key))  # deterministic

        if len(order) != len(stages):
            raise CyclicDependencyError("Cyclic dependency detected among stages")

        if bus:
            bus.emit(PlanComputed(order=[s.name for s in order], **ctx))
        return order

    except Exception as e:
        if bus:
            bus.emit(PlanFailed(error=str(e), **ctx))
        raise


def applicability(order: Sequence[Stage], inventory: Inventory) -> Dict[str, List[str]]:
    """stage name -> addresses it will run on, in plan order."""
    out: Dict[str, List[str]] = {}
    for s in order:
        out[s.name] = [n.address for n in s.targets(inventory)]
    return out
