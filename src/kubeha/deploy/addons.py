# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/deploy/addons.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from kubeha.inventory.models import Node
from kubeha.stages.models import Stage, StageAttempt

log = logging.getLogger("kubeha")

# schedule(stage, node, extra_missing) -> latest attempt for (node, stage)
Schedule = Callable[[Stage, Node, Sequence[str]], StageAttempt]


@dataclass(frozen=True)
class Prerequisite:
    """Named cluster-level condition an addon needs before it may run."""
    name: str
    check: Callable[[], bool]


def control_plane_ready(count: Callable[[], int], minimum: int = 1) -> Prerequisite:
    return Prerequisite(
        name=f"control-plane-ready>={minimum}",
        check=lambda: count() >= minimum,
    )


class AddonInstaller:
    """
    Applies addon stages one after another. Each addon is checked against its
    prerequisites first; a failed or blocked addon is reported on its own and
    never rolls back an addon that already went in.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        schedule: Schedule,
        *,
        default_prerequisites: Sequence[Prerequisite] = (),
        prerequisites: Optional[Dict[str, Sequence[Prerequisite]]] = None,
    ):
        self.stages = list(stages)
        self.schedule = schedule
        self.default_prerequisites = list(default_prerequisites)
        self.prerequisites = dict(prerequisites or {})

    def unmet(self, stage: Stage) -> List[str]:
        checks = self.prerequisites.get(stage.name, self.default_prerequisites)
        return [p.name for p in checks if not p.check()]

    def install(self, nodes: Sequence[Node]) -> List[StageAttempt]:
        results: List[StageAttempt] = []
        for stage in self.stages:
            missing = self.unmet(stage)
            if missing:
                log.warning("addon %s: prerequisites not met: %s", stage.name, ", ".join(missing))
            for node in stage.targets(nodes):
                results.append(self.schedule(stage, node, missing))
        return results
