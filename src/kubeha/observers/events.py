# src/kubeha/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single orchestration run
    cluster: str      # cluster name from the config

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now(),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


# ---------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str


# ---------------------------------------------------------------------
# Stage lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StageStarted(BaseEvent):
    node: str
    stage: str
    attempt: int

@dataclass(frozen=True)
class StageAttemptFailed(BaseEvent):
    node: str
    stage: str
    attempt: int
    error: str
    retrying: bool

@dataclass(frozen=True)
class StageSucceeded(BaseEvent):
    node: str
    stage: str
    attempts: int
    duration_ms: int

@dataclass(frozen=True)
class StageFailed(BaseEvent):
    node: str
    stage: str
    attempts: int
    error_kind: str
    error: str

@dataclass(frozen=True)
class StageBlocked(BaseEvent):
    node: str
    stage: str
    missing: List[str]

@dataclass(frozen=True)
class StageSkipped(BaseEvent):
    node: str
    stage: str
    reason: str


# ---------------------------------------------------------------------
# Join credential (never carries the token)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CredentialIssued(BaseEvent):
    primary: str
    endpoint: str


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunCancelled(BaseEvent):
    reason: str

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    status: str       # "success" | "partial" | "failed"
    succeeded: int
    failed: int
    blocked: int
    skipped: int
