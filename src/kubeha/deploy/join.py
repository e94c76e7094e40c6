# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/deploy/join.py

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence, Tuple

from kubeha.errors import LogicalError
from kubeha.inventory.models import Node, NodeRole
from kubeha.stages.driver import NodeDriver
from kubeha.stages.models import Outcome, Placement, Stage, StageAttempt, StagePhase

from ..observers.dispatcher import EventBus
from ..observers.events import CredentialIssued, new_ctx, now
from .runner import StageResult, StageRunner
from .state import ClusterState

log = logging.getLogger("kubeha")

ISSUE_CREDENTIAL = "issue-join-credential"

_JOIN_RE = re.compile(r"kubeadm join\s+(?P<endpoint>\S+)")
_TOKEN_RE = re.compile(r"--token\s+(?P<token>\S+)")
_HASH_RE = re.compile(r"--discovery-token-ca-cert-hash\s+(?P<hash>\S+)")
_CERT_KEY_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class JoinCredential:
    """
    One-time kubeadm join material. Only ``endpoint`` is safe to print.
    """
    endpoint: str
    token: str = field(repr=False)
    ca_cert_hash: str = field(repr=False)
    certificate_key: Optional[str] = field(default=None, repr=False)

    def secrets(self) -> Tuple[str, ...]:
        return tuple(s for s in (self.token, self.ca_cert_hash, self.certificate_key) if s)

    @classmethod
    def parse(cls, join_output: str, certs_output: Optional[str] = None) -> "JoinCredential":
        """
        Parse ``kubeadm token create --print-join-command`` and, optionally,
        ``kubeadm init phase upload-certs --upload-certs`` output.
        """
        # kubeadm wraps long join commands with backslash continuations
        text = re.sub(r"\\\s*\n\s*", " ", join_output)
        line = next((ln.strip() for ln in text.splitlines() if "kubeadm join" in ln), "")
        m_join, m_token, m_hash = _JOIN_RE.search(line), _TOKEN_RE.search(line), _HASH_RE.search(line)
        if not (m_join and m_token and m_hash):
            raise LogicalError("primary did not print a usable kubeadm join command", exit_code=0)

        key = None
        if certs_output is not None:
            key = next(
                (ln.strip() for ln in reversed(certs_output.splitlines()) if _CERT_KEY_RE.match(ln.strip())),
                None,
            )
            if key is None:
                raise LogicalError("primary did not print a certificate key", exit_code=0)

        return cls(
            endpoint=m_join.group("endpoint"),
            token=m_token.group("token"),
            ca_cert_hash=m_hash.group("hash"),
            certificate_key=key,
        )


# pseudo-stage recorded against the primary when the credential is issued
ISSUE_STAGE = Stage(
    name=ISSUE_CREDENTIAL,
    phase=StagePhase.JOIN,
    roles=frozenset({NodeRole.CONTROL_PLANE}),
    placement=Placement.PRIMARY,
)


class JoinCoordinator:
    """
    Issues the join credential on the primary once per run and hands it to
    the join stage of every other node.
    """

    def __init__(
        self,
        runner: StageRunner,
        state: ClusterState,
        driver: NodeDriver,
        *,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.runner = runner
        self.state = state
        self.driver = driver
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster="-")
        self._lock = threading.Lock()

    def obtain_credential(self, primary: Node, targets: Sequence[Node] = ()) -> JoinCredential:
        """
        Return the memoised credential, issuing it on ``primary`` first if needed.
        Raises LogicalError when the primary cannot issue one.
        """
        with self._lock:
            cred = self.state.credential
            if cred is not None:
                return cred

            control_plane = any(n.role is NodeRole.CONTROL_PLANE for n in targets)
            payload = self.driver.credential_payload(primary, control_plane=control_plane)
            result = self.runner.run(primary, ISSUE_STAGE, payload)
            if not result.ok:
                raise LogicalError(
                    f"cannot issue join credential on {primary.address}: {result.error}",
                    exit_code=-1,
                )

            try:
                cred = JoinCredential.parse(
                    result.outputs[0],
                    result.outputs[1] if control_plane else None,
                )
            except LogicalError as e:
                # the stage ran but produced nothing usable
                self.state.record(_as_failed(self.state, primary, e))
                raise

            self.state.remember_credential(cred)
            log.info("join credential issued on %s for endpoint %s", primary.address, cred.endpoint)
            self.bus.emit(CredentialIssued(primary=primary.address, endpoint=cred.endpoint,
                                           **{**self.run_ctx, "ts": now()}))
            return cred

    def distribute(self, credential: JoinCredential, stage: Stage, target: Node) -> StageResult:
        payload = self.driver.payload(stage, target, credential=credential)
        return self.runner.run(target, stage, payload)


def _as_failed(state: ClusterState, primary: Node, exc: LogicalError) -> StageAttempt:
    latest = state.latest(primary.address, ISSUE_CREDENTIAL)
    return replace(latest, outcome=Outcome.FAILED, error_kind=type(exc).__name__, error=str(exc))
