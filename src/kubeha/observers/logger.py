from __future__ import annotations
import logging
from .events import BaseEvent, StageAttemptFailed, StageBlocked, StageFailed


class LoggerObserver:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "run_id", "cluster"))

        if isinstance(event, (StageFailed, StageBlocked)):
            self.logger.error(f"[EVENT] {etype}: {msg}")
        elif isinstance(event, StageAttemptFailed):
            self.logger.warning(f"[EVENT] {etype}: {msg}")
        else:
            self.logger.info(f"[EVENT] {etype}: {msg}")
