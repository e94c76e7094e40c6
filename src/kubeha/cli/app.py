# src/kubeha/cli/app.py
from __future__ import annotations

import signal
from pathlib import Path
from typing import Dict, List, Optional

import typer

from kubeha.config.loader import load_config
from kubeha.config.models import ClusterConfig
from kubeha.deploy.orchestrator import (
    ClusterOrchestrator,
    OrchestratorOptions,
    RunReport,
    RunStatus,
    build_report,
)
from kubeha.deploy.planner import plan
from kubeha.deploy.runner import RunnerOptions
from kubeha.deploy.state import ClusterState
from kubeha.errors import ConfigError
from kubeha.execution.local import LocalExecutor
from kubeha.execution.ssh import SshExecutor
from kubeha.inventory.loader import Inventory, load_inventory
from kubeha.logging.log import init_logging
from kubeha.observers.console import ConsoleObserver
from kubeha.observers.jsonfile import JsonFileObserver
from kubeha.observers.logger import LoggerObserver
from kubeha.stages.catalog import default_stages
from kubeha.stages.kubeadm import KubeadmDriver
from kubeha.stages.models import Outcome


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="kubeha: highly-available Kubernetes bootstrap")

EXIT_CODES: Dict[RunStatus, int] = {
    RunStatus.SUCCESS: 0,
    RunStatus.PARTIAL: 1,
    RunStatus.FAILED: 2,
}
EXIT_CONFIG_ERROR = 2

_LOCAL = {"localhost", "127.0.0.1", "::1"}

_OUTCOME_COLORS = {
    Outcome.SUCCEEDED: typer.colors.GREEN,
    Outcome.FAILED: typer.colors.RED,
    Outcome.BLOCKED: typer.colors.YELLOW,
    Outcome.SKIPPED: typer.colors.BRIGHT_BLACK,
}


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def build_executor(inventory: Inventory):
    """SSH to every node, or run locally when the whole inventory is this machine."""
    if all(n.address in _LOCAL for n in inventory):
        return LocalExecutor()
    return SshExecutor({n.address: n for n in inventory})


def _load(config: Path):
    cfg: ClusterConfig = load_config(config)
    return cfg, load_inventory(cfg)


def _print_plan(applicable: Dict[str, List[str]]) -> None:
    typer.secho("Stage plan", bold=True)
    for i, (stage, nodes) in enumerate(applicable.items(), start=1):
        targets = ", ".join(nodes) if nodes else "(no nodes)"
        typer.echo(f"  {i}. {stage:<26} {targets}")


def _print_report(report: RunReport) -> None:
    typer.echo("")
    typer.secho("Stages", bold=True)
    for a in report.attempts:
        line = f"  {a.node:<22} {a.stage:<26} {a.outcome.value}"
        if a.error:
            line += f"  ({a.error_kind}: {a.error.splitlines()[0]})"
        typer.secho(line, fg=_OUTCOME_COLORS.get(a.outcome))

    typer.echo("")
    typer.secho("Nodes", bold=True)
    for n in report.nodes:
        marker = " (primary)" if n.primary else ""
        typer.echo(f"  {n.address:<22} {n.role.value:<14} {n.phase.value}{marker}")

    typer.echo("")
    color = {
        RunStatus.SUCCESS: typer.colors.GREEN,
        RunStatus.PARTIAL: typer.colors.YELLOW,
        RunStatus.FAILED: typer.colors.RED,
    }[report.status]
    typer.secho(report.summary(), fg=color, bold=True)
    if report.cancelled:
        typer.secho("run was cancelled; unscheduled stages are marked skipped", fg=typer.colors.YELLOW)


class _Interrupts:
    """First SIGINT cancels the run, the second one aborts."""

    def __init__(self, orchestrator: ClusterOrchestrator):
        self.orchestrator = orchestrator
        self._previous = None

    def _handle(self, signum, frame) -> None:
        if self.orchestrator.cancelled:
            raise KeyboardInterrupt
        typer.secho("\ninterrupt: finishing running stages, press Ctrl-C again to abort",
                    fg=typer.colors.YELLOW, err=True)
        self.orchestrator.cancel("interrupted")

    def __enter__(self) -> "_Interrupts":
        self._previous = signal.signal(signal.SIGINT, self._handle)
        return self

    def __exit__(self, *exc) -> None:
        signal.signal(signal.SIGINT, self._previous)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def up(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", min=1, help="Nodes worked on at once (default: all)",
    ),
    retry_attempts: Optional[int] = typer.Option(
        None, "--retry-attempts", min=1, help="Attempts per stage for transient failures",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate and print the plan only"),
    resume: bool = typer.Option(False, "--resume", help="Skip stages the state file marks succeeded"),
    state_file: Optional[Path] = typer.Option(None, "--state-file"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Bring the cluster described by CONFIG up."""
    try:
        cfg, inventory = _load(config)
    except ConfigError as e:
        typer.secho(f"config error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR)

    orch_cfg = cfg.orchestration
    options = OrchestratorOptions(
        concurrency=concurrency or orch_cfg.concurrency,
        runner=RunnerOptions(
            retry_attempts=retry_attempts or orch_cfg.retry_attempts,
            backoff_seconds=orch_cfg.backoff_seconds,
            backoff_factor=orch_cfg.backoff_factor,
            max_backoff_seconds=orch_cfg.max_backoff_seconds,
            attempt_timeout_seconds=orch_cfg.attempt_timeout_seconds,
        ),
    )
    driver = KubeadmDriver(cfg, inventory.nodes)

    if dry_run:
        orchestrator = ClusterOrchestrator(
            inventory, LocalExecutor(), driver, options=options, cluster_name=cfg.name,
        )
        try:
            applicable = orchestrator.dry_run()
        except ConfigError as e:
            typer.secho(f"config error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(EXIT_CONFIG_ERROR)
        _print_plan(applicable)
        typer.echo("")
        typer.echo("dry run: nothing executed")
        return

    logger, run_id, log_path = init_logging(base_dir=log_dir, verbose=debug)

    typer.echo("")
    typer.secho("kubeha up", bold=True)
    typer.echo(f"  Cluster  : {cfg.name}")
    typer.echo(f"  Nodes    : {len(inventory)}")
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    path = state_file or orch_cfg.state_file
    try:
        if resume:
            state = ClusterState.load(path)
            logger.info("resuming from %s (%d recorded attempts)", path, len(state.history()))
        else:
            state = ClusterState(path=path)
    except ConfigError as e:
        typer.secho(f"state error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR)

    observers = [
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(log_path.with_suffix(".jsonl")),
    ]

    executor = build_executor(inventory)
    orchestrator = ClusterOrchestrator(
        inventory,
        executor,
        driver,
        state=state,
        options=options,
        observers=observers,
        cluster_name=cfg.name,
        run_id=run_id,
    )
    try:
        with _Interrupts(orchestrator):
            report = orchestrator.run()
    except ConfigError as e:
        typer.secho(f"config error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR)
    finally:
        close = getattr(executor, "close", None)
        if close is not None:
            close()

    _print_report(report)
    typer.echo(f"  State    : {path}")
    raise typer.Exit(EXIT_CODES[report.status])


@app.command("plan")
def plan_cmd(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
):
    """Print the stage order and the nodes each stage runs on."""
    up(
        config=config, concurrency=None, retry_attempts=None, dry_run=True,
        resume=False, state_file=None, log_dir=None, debug=False,
    )


@app.command()
def status(
    state_file: Path = typer.Option(..., "--state-file", exists=True, dir_okay=False),
    config: Optional[Path] = typer.Option(None, "--config", help="Cluster definition YAML"),
):
    """Show what a saved state file says about the cluster."""
    try:
        state = ClusterState.load(state_file, autosave=False)
        if config is None:
            for a in sorted(state.attempts(), key=lambda a: (a.node, a.stage)):
                typer.secho(
                    f"  {a.node:<22} {a.stage:<26} {a.outcome.value:<10} attempt {a.attempt}",
                    fg=_OUTCOME_COLORS.get(a.outcome),
                )
            return
        cfg, inventory = _load(config)
        report = build_report(state, plan(default_stages()), inventory)
    except ConfigError as e:
        typer.secho(f"error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_CONFIG_ERROR)

    _print_report(report)
    raise typer.Exit(EXIT_CODES[report.status])


if __name__ == "__main__":
    app()
