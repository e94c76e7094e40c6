# src/kubeha/observers/console.py
import typer

from .events import BaseEvent, StageBlocked, StageFailed, StageSkipped, StageSucceeded

_COLORS = {
    StageSucceeded: typer.colors.GREEN,
    StageFailed: typer.colors.RED,
    StageBlocked: typer.colors.YELLOW,
    StageSkipped: typer.colors.BRIGHT_BLACK,
}


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "cluster"))
        typer.secho(f"[{d['ts']}] {k} {data}", fg=_COLORS.get(type(event)))
