# src/kubestrap/cli/app.py
from __future__ import annotations

import json
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import typer

from kubestrap.bootstrap.models import Inventory, RunReport
from kubestrap.bootstrap.orchestrator import BootstrapOrchestrator, describe_plan, verify_cluster
from kubestrap.bootstrap.teardown import teardown as run_teardown
from kubestrap.config.loader import load_config
from kubestrap.config.models import KubestrapConfig
from kubestrap.executor.ssh import SshExecutor
from kubestrap.logging.log import init_logging, register_secret
from kubestrap.observers.console import ConsoleObserver
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import new_ctx
from kubestrap.observers.jsonfile import JsonFileObserver
from kubestrap.observers.logger import LoggerObserver


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Kubestrap: bootstrap a kubeadm cluster over SSH")

LOG_DIR = Path.home() / ".kubestrap" / "logs"


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def build_executor(cfg: KubestrapConfig) -> SshExecutor:
    conn = cfg.inventory.connection
    return SshExecutor(
        connect_timeout=conn.connect_timeout,
        connect_retries=conn.connect_retries,
        connect_retry_delay=conn.connect_retry_delay,
    )


def _load(config: Path) -> KubestrapConfig:
    try:
        cfg = load_config(config)
    except (OSError, ValueError) as e:
        # pydantic ValidationError and yaml errors are both ValueErrors
        typer.secho(f"Invalid configuration {config}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    conn = cfg.inventory.connection
    register_secret(conn.password)
    register_secret(conn.become_password)
    return cfg


def _start(cfg: KubestrapConfig, title: str, debug: bool):
    logger, run_id, log_path = init_logging(base_dir=LOG_DIR, verbose=debug)

    typer.echo("")
    typer.secho(title, bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    bus = EventBus(observers=[
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(LOG_DIR / f"{run_id}.jsonl"),
    ])
    ctx = new_ctx(env=cfg.environment, context=cfg.inventory.master.name, run_id=run_id)
    return bus, ctx


@contextmanager
def _cancel_on_interrupt():
    """First Ctrl-C asks the run to stop after the current remote command."""
    cancel = threading.Event()

    def _handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        typer.secho("Interrupt received, stopping after in-flight commands...", fg=typer.colors.YELLOW)
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _finish(report: RunReport, report_json: Optional[Path]) -> None:
    if report_json:
        report_json.parent.mkdir(parents=True, exist_ok=True)
        report_json.write_text(json.dumps(report.to_dict(), indent=2))

    typer.echo("")
    color = typer.colors.GREEN if report.ok else typer.colors.RED
    typer.secho(report.summary(), fg=color, bold=True)
    if report.detail:
        typer.echo(f"  {report.detail}")
    for r in report.warnings:
        typer.secho(f"  warning: {r.node}/{r.step}: {r.detail}", fg=typer.colors.YELLOW)
    if report.credentials_path:
        typer.echo(f"  Credentials: {report.credentials_path}")
    raise typer.Exit(code=report.exit_code)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def bootstrap(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    credentials: Optional[Path] = typer.Option(
        None, "--credentials", help="Where to write the admin kubeconfig (overrides cluster.credentials_path)"
    ),
    no_validate: bool = typer.Option(False, "--no-validate", help="Skip the workload validation"),
    report_json: Optional[Path] = typer.Option(None, "--report-json"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Provision every node, initialize the control plane and join the workers."""
    cfg = _load(config)
    if no_validate:
        cfg.validation.enabled = False

    bus, ctx = _start(cfg, "Kubestrap Bootstrap Started", debug)
    inventory = Inventory.from_spec(cfg.inventory)
    executor = build_executor(cfg)
    try:
        with _cancel_on_interrupt() as cancel:
            report = BootstrapOrchestrator(
                executor, inventory, cfg.cluster, cfg.validation,
                bus=bus, run_ctx=ctx, cancel=cancel,
                credentials_path=credentials or cfg.cluster.credentials_path,
            ).run()
    finally:
        executor.close()
    _finish(report, report_json)


@app.command()
def teardown(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    report_json: Optional[Path] = typer.Option(None, "--report-json"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Reset every inventory node back to a pre-bootstrap state."""
    cfg = _load(config)
    inventory = Inventory.from_spec(cfg.inventory)
    names = ", ".join(n.name for n in inventory.nodes)
    if not yes:
        typer.confirm(f"This wipes cluster state on {names}. Continue?", abort=True)

    bus, ctx = _start(cfg, "Kubestrap Teardown Started", debug)
    executor = build_executor(cfg)
    try:
        report = run_teardown(
            executor, inventory,
            cri_socket=cfg.cluster.cri_socket,
            timeout=cfg.cluster.command_timeout,
            max_parallel=cfg.cluster.max_parallel,
            bus=bus, run_ctx=ctx,
        )
    finally:
        executor.close()
    _finish(report, report_json)


@app.command()
def verify(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
    no_validate: bool = typer.Option(False, "--no-validate", help="Only check node readiness"),
    report_json: Optional[Path] = typer.Option(None, "--report-json"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Check an existing cluster: every node Ready and a replicated workload schedulable."""
    cfg = _load(config)
    if no_validate:
        cfg.validation.enabled = False

    bus, ctx = _start(cfg, "Kubestrap Verify Started", debug)
    executor = build_executor(cfg)
    try:
        with _cancel_on_interrupt() as cancel:
            report = verify_cluster(
                executor, Inventory.from_spec(cfg.inventory), cfg.cluster, cfg.validation,
                bus=bus, run_ctx=ctx, cancel=cancel,
            )
    finally:
        executor.close()
    _finish(report, report_json)


@app.command()
def plan(
    config: Path = typer.Argument(..., help="Cluster definition YAML"),
):
    """Print the phases and steps a bootstrap would run. Connects to nothing."""
    cfg = _load(config)
    inventory = Inventory.from_spec(cfg.inventory)
    for phase, node, steps in describe_plan(inventory, cfg.cluster, cfg.validation):
        typer.secho(f"{phase:<18} {node}", bold=True)
        for s in steps:
            typer.echo(f"    - {s}")


if __name__ == "__main__":
    app()
