# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations
from typing import Protocol, runtime_checkable
from .events import BaseEvent


@runtime_checkable
class Observer(Protocol):
    """
    Receives every orchestration event. Stage events arrive from worker
    threads, so implementations that keep state need their own lock.
    """

    def notify(self, event: BaseEvent) -> None: ...
