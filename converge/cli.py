"""
converge CLI entry point.
"""
import os
import sys
from typing import Dict, List, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.table import Table

from converge import __version__, expressions
from converge.config import Settings, load_settings
from converge.detect import detect_format
from converge.engine import diff as diff_engine
from converge.engine import graph as graph_builder
from converge.engine import planner
from converge.engine.executor import ExecutionResult, Executor, OperationResult
from converge.engine.state import LocalStateStore
from converge.errors import BuildError, ConvergeError
from converge.models.change import UNKNOWN
from converge.models.plan import OpStatus, Plan
from converge.models.resource import Configuration
from converge.parsers import document, terraform
from converge.providers import build_provider
from converge.reporters import json_reporter, markdown

console = Console(stderr=True)

_BANNER = r"""
  ___ ___  _ ____   _____ _ __ __ _  ___
 / __/ _ \| '_ \ \ / / _ \ '__/ _` |/ _ \
| (_| (_) | | | \ V /  __/ | | (_| |  __/
 \___\___/|_| |_|\_/ \___|_|  \__, |\___|
                              |___/
"""

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "replace": "bold magenta",
    "destroy": "red",
    "no-op": "dim",
}

_STATUS_COLORS = {
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "cancelled": "dim",
    "in_progress": "cyan",
    "pending": "dim",
}


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]{_BANNER}[/bold cyan]")
    c.print(f"  [dim]declarative infrastructure reconciler[/dim]   [dim]v{__version__}[/dim]\n")


def _collect_files(paths: Tuple[str, ...]) -> List[str]:
    """Expand directories into file paths, skipping hidden directories."""
    files = []
    for p in paths:
        if os.path.isfile(p):
            files.append(p)
        elif os.path.isdir(p):
            for root, dirs, fnames in os.walk(p):
                dirs[:] = sorted(d for d in dirs if not d.startswith("."))
                for fname in sorted(fnames):
                    files.append(os.path.join(root, fname))
        else:
            console.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    return files


def _parse_files(file_paths: List[str]) -> Configuration:
    config = Configuration()
    for fp in file_paths:
        fmt = detect_format(fp)
        if fmt == "terraform":
            config.merge(terraform.parse_file(fp), fp)
        elif fmt in ("terraform-json", "document"):
            config.merge(document.parse_file(fp), fp)
    return config


def _parse_vars(pairs: Tuple[str, ...]) -> Dict[str, object]:
    values: Dict[str, object] = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected NAME=VALUE, got '{pair}'", param_hint="--var")
        name, raw = pair.split("=", 1)
        try:
            values[name.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            values[name.strip()] = raw
    return values


def _settings(config_path: Optional[str], state_path: Optional[str]) -> Settings:
    try:
        settings = load_settings(config_path)
    except ConvergeError as exc:
        raise click.BadParameter(str(exc), param_hint="--config")
    if state_path:
        settings.state = state_path
    return settings


def _fail(stderr: Console, label: str, exc: Exception, code: int = 2) -> None:
    stderr.print(f"[red]{label}:[/red] {exc}")
    sys.exit(code)


class _Context:
    """Everything one command needs, built once per invocation."""

    def __init__(self, paths, variables, config_path, state_path, no_color, refresh=False, destroy=False):
        self.stderr = Console(stderr=True, no_color=no_color)
        self.settings = _settings(config_path, state_path)
        self.source_label = ", ".join(paths)
        self.store = LocalStateStore(self.settings.state)
        try:
            self.provider = build_provider(self.settings)
        except ConvergeError as exc:
            _fail(self.stderr, "Config error", exc)

        with self.stderr.status("[bold]Reading configuration…"):
            file_paths = _collect_files(paths)
            try:
                config = _parse_files(file_paths)
                self.graph = graph_builder.build(config, variables, self.provider.schema)
            except BuildError as exc:
                _fail(self.stderr, "Configuration error", exc)

        self.stderr.print(f"Found [bold]{len(self.graph.nodes)}[/bold] resources.")
        self.refresh = refresh
        self.destroy = destroy

    def make_plan(self) -> Plan:
        try:
            recorded = self.store.records()
            state = recorded
            if self.refresh and state:
                with self.stderr.status("[bold]Refreshing state…"):
                    state = diff_engine.refresh(recorded, self.provider)
            changes = diff_engine.diff(self.graph, state, self.provider.schema, destroy=self.destroy)
            plan = planner.build_plan(
                self.graph, changes, state, destroy=self.destroy, recorded=recorded,
                serial=self.store.serial, lineage=self.store.lineage,
            )
        except BuildError as exc:
            _fail(self.stderr, "Plan error", exc)
        except ConvergeError as exc:
            _fail(self.stderr, "State error", exc)
        self.edges = planner.dependency_edges(self.graph, state)
        return plan


def _print_plan(plan: Plan, out: Console) -> None:
    tbl = Table(title="Destroy Plan" if plan.destroy else "Plan", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Action", width=9)
    tbl.add_column("Resource")
    tbl.add_column("Detail")

    for n, change in enumerate(plan.changes, 1):
        color = _ACTION_COLORS.get(change.action.value, "")
        detail = change.reason
        if change.diffs and change.action.value in ("update", "replace"):
            detail += "; " + ", ".join(
                f"{d.name}{' (forces replacement)' if d.forces_replacement else ''}" for d in change.diffs
            )
        if change.deposed_id:
            detail += f"; deposed {change.deposed_id} pending destroy"
        tbl.add_row(str(n), f"[{color}]{change.action.value}[/{color}]", change.address, detail)

    out.print(tbl)
    counts = plan.summary()
    out.print(
        f"Plan: [green]{counts['create']} to add[/green], [yellow]{counts['update']} to change[/yellow], "
        f"[magenta]{counts['replace']} to replace[/magenta], [red]{counts['destroy']} to destroy[/red]."
    )
    if plan.operations:
        out.print("Execution order: " + " → ".join(str(op) for op in plan.operations))


def _print_results(result: ExecutionResult, out: Console) -> None:
    tbl = Table(title="Results", show_header=True, header_style="bold")
    tbl.add_column("Operation")
    tbl.add_column("Status", width=11)
    tbl.add_column("Attempts", width=8)
    tbl.add_column("Detail")
    for r in result.results.values():
        color = _STATUS_COLORS.get(r.status.value, "")
        tbl.add_row(
            str(r.operation),
            f"[{color}]{r.status.value}[/{color}]",
            str(r.attempts),
            r.error or r.note or (r.remote_id or ""),
        )
    out.print(tbl)


def _progress(stderr: Console):
    def on_event(result: OperationResult) -> None:
        if result.status == OpStatus.IN_PROGRESS:
            stderr.print(f"[cyan]…[/cyan] {result.operation}")
        elif result.status == OpStatus.SUCCEEDED:
            stderr.print(f"[green]✓[/green] {result.operation} {result.note or result.remote_id or ''}")
        elif result.status == OpStatus.FAILED:
            stderr.print(f"[red]✗[/red] {result.operation}: {result.error}")
        else:
            stderr.print(f"[yellow]-[/yellow] {result.operation} {result.status.value}")
    return on_event


def _write_report(ctx: _Context, plan: Plan, fmt: str, output: Optional[str], result=None, ascii_mode=False) -> None:
    if fmt == "json":
        content = json_reporter.build_report(plan, ctx.edges, ctx.source_label, result)
    else:
        content = markdown.build_report(plan, ctx.edges, ctx.source_label, result, ascii_mode=ascii_mode)
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        ctx.stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


def _resolve_outputs(ctx: _Context) -> Dict[str, object]:
    records = ctx.store.records()

    def resolve(tok: expressions.Token):
        if not tok.is_resource or tok.attribute is None:
            return expressions.KEEP
        record = records.get(tok.reference().address)
        if record is None or not record.has(tok.attribute):
            return UNKNOWN
        return record.value(tok.attribute)

    return {name: expressions.substitute(expr, resolve) for name, expr in ctx.graph.outputs.items()}


def _print_outputs(ctx: _Context, out: Console) -> None:
    outputs = _resolve_outputs(ctx)
    if not outputs:
        return
    out.print("\n[bold]Outputs:[/bold]")
    for name, value in outputs.items():
        out.print(f"  {name} = {value}")


def _execute(ctx: _Context, plan: Plan, auto_approve: bool, parallelism: Optional[int]) -> ExecutionResult:
    if not auto_approve:
        verb = "Destroy all managed resources?" if plan.destroy else "Apply these changes?"
        if not click.confirm(verb, default=False, err=True):
            ctx.stderr.print("[yellow]Cancelled.[/yellow]")
            sys.exit(1)

    s = ctx.settings
    executor = Executor(
        ctx.provider,
        ctx.store,
        parallelism=parallelism or s.parallelism,
        max_attempts=s.max_attempts,
        backoff=s.backoff,
        max_backoff=s.max_backoff,
        lock_timeout=s.lock_timeout,
        on_event=_progress(ctx.stderr),
    )
    try:
        return executor.run(plan)
    except ConvergeError as exc:
        _fail(ctx.stderr, "Error", exc)


def _finish(ctx: _Context, result: ExecutionResult) -> None:
    _print_results(result, ctx.stderr)
    counts = result.counts()
    ctx.stderr.print(
        f"[green]{counts['succeeded']} succeeded[/green], [red]{counts['failed']} failed[/red], "
        f"[yellow]{counts['skipped']} skipped[/yellow], {counts['cancelled']} cancelled."
    )
    sys.exit(0 if result.ok else 1)


# ----------------------------------------------------------------- commands
_common = [
    click.argument("paths", nargs=-1, type=click.Path()),
    click.option("--var", "variables", multiple=True, metavar="NAME=VALUE", help="Set a variable (repeatable)."),
    click.option("--config", "config_path", type=click.Path(), default=None, help="Settings file (default: ./converge.yaml)."),
    click.option("--state", "state_path", type=click.Path(), default=None, help="State file path."),
    click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output."),
]


def common_options(fn):
    for decorator in reversed(_common):
        fn = decorator(fn)
    return fn


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """converge — declarative infrastructure reconciler."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@common_options
@click.option(
    "--format", "output_format",
    type=click.Choice(["text", "markdown", "json"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.option("--output", "-o", type=click.Path(), default=None, help="Write report to this file (default: stdout).")
@click.option("--refresh/--no-refresh", default=True, show_default=True, help="Read live remote state before diffing.")
@click.option("--destroy", "destroy_mode", is_flag=True, default=False, help="Plan a full teardown.")
@click.option("--ascii", is_flag=True, default=False, help="Use ASCII-only action markers in Markdown.")
def plan(paths, variables, config_path, state_path, no_color, output_format, output, refresh, destroy_mode, ascii):
    """
    Show what apply would do, without changing anything.

    PATHS can be files or directories (default: current directory).
    """
    _print_banner(no_color)
    ctx = _Context(paths or (".",), _parse_vars(variables), config_path, state_path, no_color,
                   refresh=refresh, destroy=destroy_mode)
    the_plan = ctx.make_plan()

    fmt = output_format.lower()
    if fmt == "text":
        _print_plan(the_plan, Console(no_color=no_color))
        if output:
            _write_report(ctx, the_plan, "markdown", output, ascii_mode=ascii)
    else:
        _write_report(ctx, the_plan, fmt, output, ascii_mode=ascii)
    sys.exit(0)


@cli.command()
@common_options
@click.option("--auto-approve", "-y", is_flag=True, default=False, help="Skip interactive approval.")
@click.option("--parallelism", type=click.IntRange(min=1), default=None, help="Concurrent operations (default from settings).")
@click.option("--refresh/--no-refresh", default=True, show_default=True, help="Read live remote state before diffing.")
@click.option("--output", "-o", type=click.Path(), default=None, help="Write a Markdown apply report to this file.")
def apply(paths, variables, config_path, state_path, no_color, auto_approve, parallelism, refresh, output):
    """Build a plan, confirm it and drive the provider toward it."""
    _print_banner(no_color)
    ctx = _Context(paths or (".",), _parse_vars(variables), config_path, state_path, no_color, refresh=refresh)
    the_plan = ctx.make_plan()
    _print_plan(the_plan, ctx.stderr)

    if the_plan.is_empty:
        ctx.stderr.print("[green]No changes.[/green] Infrastructure matches the configuration.")
        _print_outputs(ctx, Console(no_color=no_color))
        sys.exit(0)

    result = _execute(ctx, the_plan, auto_approve, parallelism)
    if output:
        _write_report(ctx, the_plan, "markdown", output, result)
    _print_outputs(ctx, Console(no_color=no_color))
    _finish(ctx, result)


@cli.command()
@common_options
@click.option("--auto-approve", "-y", is_flag=True, default=False, help="Skip interactive approval.")
@click.option("--parallelism", type=click.IntRange(min=1), default=None, help="Concurrent operations (default from settings).")
def destroy(paths, variables, config_path, state_path, no_color, auto_approve, parallelism):
    """Destroy every resource recorded in state."""
    _print_banner(no_color)
    ctx = _Context(paths or (".",), _parse_vars(variables), config_path, state_path, no_color,
                   refresh=False, destroy=True)
    the_plan = ctx.make_plan()
    _print_plan(the_plan, ctx.stderr)

    if the_plan.is_empty:
        ctx.stderr.print("[green]Nothing to destroy.[/green]")
        sys.exit(0)

    _finish(ctx, _execute(ctx, the_plan, auto_approve, parallelism))


@cli.command()
@click.option("--config", "config_path", type=click.Path(), default=None, help="Settings file (default: ./converge.yaml).")
@click.option("--state", "state_path", type=click.Path(), default=None, help="State file path.")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
def show(config_path, state_path, no_color):
    """List the resources recorded in state."""
    settings = _settings(config_path, state_path)
    out = Console(no_color=no_color)
    store = LocalStateStore(settings.state)
    try:
        records = store.records()
    except ConvergeError as exc:
        _fail(Console(stderr=True, no_color=no_color), "State error", exc)

    if not records:
        out.print("State is empty.")
        sys.exit(0)

    tbl = Table(title=f"State ({settings.state}, serial {store.serial})", show_header=True, header_style="bold")
    tbl.add_column("Resource")
    tbl.add_column("Remote ID")
    tbl.add_column("Depends on")
    tbl.add_column("Deposed")
    for identity in sorted(records):
        r = records[identity]
        tbl.add_row(identity, r.remote_id or "-", ", ".join(r.dependencies) or "-", r.deposed_id or "")
    out.print(tbl)
    sys.exit(0)


@cli.command()
@common_options
def output(paths, variables, config_path, state_path, no_color):
    """Print output values computed from the current state."""
    ctx = _Context(paths or (".",), _parse_vars(variables), config_path, state_path, no_color)
    try:
        values = _resolve_outputs(ctx)
    except ConvergeError as exc:
        _fail(ctx.stderr, "State error", exc)
    for name, value in values.items():
        click.echo(f"{name} = {value}")
    sys.exit(0)


@cli.command("force-unlock")
@click.argument("lock_id")
@click.option("--config", "config_path", type=click.Path(), default=None, help="Settings file (default: ./converge.yaml).")
@click.option("--state", "state_path", type=click.Path(), default=None, help="State file path.")
def force_unlock(lock_id, config_path, state_path):
    """Remove a stale state lock left by an interrupted run."""
    settings = _settings(config_path, state_path)
    store = LocalStateStore(settings.state)
    stderr = Console(stderr=True)
    try:
        store.force_unlock(lock_id)
    except ConvergeError as exc:
        _fail(stderr, "Unlock failed", exc, code=1)
    stderr.print(f"Lock [bold]{lock_id}[/bold] released.")
    sys.exit(0)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
