# src/kubestrap/observers/console.py
import typer

from kubestrap.logging.log import redact
from .events import BaseEvent, StepCompleted

_COLORS = {"succeeded": typer.colors.GREEN, "skipped": typer.colors.BLUE, "failed": typer.colors.RED}


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        if isinstance(event, StepCompleted):
            status = typer.style(f"{event.status:<9}", fg=_COLORS.get(event.status))
            line = f"[{d['ts']}] {status} {event.node:<16} {event.step}"
            if event.detail and event.status == "failed":
                line += f"  ({event.detail.splitlines()[-1]})"
            typer.echo(redact(line))
            return
        typer.echo(redact(f"[{d['ts']}] {k} run={d['run_id']} "
                          + ", ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "env", "context"))))
