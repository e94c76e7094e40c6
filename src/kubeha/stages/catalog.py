# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/stages/catalog.py

from __future__ import annotations

from typing import Tuple

from kubeha.inventory.models import NodeRole
from .models import NodePhase, Placement, Stage, StagePhase

INSTALL_PACKAGES = "install-packages"
PREPARE_RUNTIME = "prepare-runtime"
INIT_PRIMARY = "init-primary"
JOIN = "join"
INSTALL_MESH = "install-mesh"
CONFIGURE_LOAD_BALANCER = "configure-load-balancer"
INSTALL_CD = "install-cd"

CLUSTER_ROLES = frozenset({NodeRole.CONTROL_PLANE, NodeRole.WORKER})


def default_stages() -> Tuple[Stage, ...]:
    """
    install-packages -> prepare-runtime -> init-primary -> join
                                                   \\-> install-mesh -> configure-load-balancer -> install-cd
    """
    return (
        Stage(
            name=INSTALL_PACKAGES,
            phase=StagePhase.PROVISION,
            advances_to=NodePhase.PACKAGES_READY,
        ),
        Stage(
            name=PREPARE_RUNTIME,
            phase=StagePhase.PROVISION,
            predecessors=(INSTALL_PACKAGES,),
            advances_to=NodePhase.RUNTIME_PREPARED,
        ),
        Stage(
            name=INIT_PRIMARY,
            phase=StagePhase.BOOTSTRAP,
            predecessors=(PREPARE_RUNTIME,),
            roles=frozenset({NodeRole.CONTROL_PLANE}),
            placement=Placement.PRIMARY,
            advances_to=NodePhase.CONTROL_PLANE_READY,
        ),
        Stage(
            name=JOIN,
            phase=StagePhase.JOIN,
            predecessors=(PREPARE_RUNTIME, INIT_PRIMARY),
            roles=CLUSTER_ROLES,
            placement=Placement.SECONDARY,
            advances_to=NodePhase.JOINED,
        ),
        Stage(
            name=INSTALL_MESH,
            phase=StagePhase.ADDON,
            predecessors=(INIT_PRIMARY,),
            roles=frozenset({NodeRole.CONTROL_PLANE}),
            placement=Placement.PRIMARY,
            advances_to=NodePhase.ADDONS_INSTALLED,
        ),
        Stage(
            name=CONFIGURE_LOAD_BALANCER,
            phase=StagePhase.ADDON,
            predecessors=(INSTALL_PACKAGES, INSTALL_MESH),
            roles=frozenset({NodeRole.EDGE}),
            advances_to=NodePhase.ADDONS_INSTALLED,
            fallback_to_primary=True,
        ),
        Stage(
            name=INSTALL_CD,
            phase=StagePhase.ADDON,
            predecessors=(CONFIGURE_LOAD_BALANCER,),
            roles=frozenset({NodeRole.CONTROL_PLANE}),
            placement=Placement.PRIMARY,
            advances_to=NodePhase.ADDONS_INSTALLED,
        ),
    )
