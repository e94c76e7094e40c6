# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
from typing import TYPE_CHECKING, Optional, Protocol

from kubeha.execution.models import StagePayload
from kubeha.inventory.models import Node
from .models import Stage

if TYPE_CHECKING:
    from kubeha.deploy.join import JoinCredential


class NodeDriver(Protocol):
    """
    Turns a declarative stage into the commands for one node.
    Implementations must return idempotent payloads: safe to run twice.
    """

    def payload(self, stage: Stage, node: Node, *, credential: Optional["JoinCredential"] = None) -> StagePayload:
        """Commands for ``stage`` on ``node``. Join-phase stages receive the credential."""
        ...

    def credential_payload(self, primary: Node, *, control_plane: bool) -> StagePayload:
        """
        Commands run on the primary to issue a join credential. The first
        command prints the join command line; when ``control_plane`` is set a
        second command prints the certificate key.
        """
        ...
