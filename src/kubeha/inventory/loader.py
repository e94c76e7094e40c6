# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/inventory/loader.py

from __future__ import annotations

from typing import Iterable, Iterator, Tuple

from kubeha.config.models import ClusterConfig
from kubeha.errors import ConfigError
from .models import Node, NodeRole


class Inventory:
    """
    Immutable, ordered set of nodes with exactly one primary control-plane node.
    """

    def __init__(self, nodes: Iterable[Node]):
        self._nodes: Tuple[Node, ...] = tuple(nodes)
        _validate(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node: object) -> bool:
        return node in self._nodes

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self._nodes

    @property
    def primary(self) -> Node:
        return next(n for n in self._nodes if n.primary)


def _validate(nodes: Tuple[Node, ...]) -> None:
    if not nodes:
        raise ConfigError("inventory is empty")

    seen: set[str] = set()
    for n in nodes:
        key = n.address.strip().lower()
        if not key:
            raise ConfigError("node address must not be empty")
        if key in seen:
            raise ConfigError(f"duplicate node address '{n.address}'")
        seen.add(key)

    primaries = [n for n in nodes if n.primary]
    if len(primaries) != 1:
        raise ConfigError(
            f"inventory needs exactly one primary control-plane node, found {len(primaries)}"
        )
    if primaries[0].role is not NodeRole.CONTROL_PLANE:
        raise ConfigError(
            f"primary node '{primaries[0].address}' must have role control-plane, "
            f"not {primaries[0].role.value}"
        )


def load_inventory(cfg: ClusterConfig) -> Inventory:
    """Build the validated inventory from the ``nodes`` mapping, keeping document order."""
    return Inventory(
        Node(
            address=address,
            role=NodeRole(node_cfg.role),
            username=node_cfg.username,
            port=node_cfg.port,
            pkey_path=node_cfg.pkey_path,
            primary=node_cfg.primary,
        )
        for address, node_cfg in cfg.nodes.items()
    )
