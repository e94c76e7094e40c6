# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/inventory/models.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class NodeRole(str, Enum):
    """Node roles in the cluster."""
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"
    EDGE = "edge"


@dataclass(frozen=True)
class Node:
    """
    A machine the orchestrator drives over SSH.
    """
    address: str                  # IP or DNS to connect, unique in the inventory
    role: NodeRole
    username: str                 # SSH username
    port: int = 22
    pkey_path: Optional[Path] = None
    primary: bool = False         # the control-plane node that runs kubeadm init

    def __str__(self) -> str:
        return self.address
