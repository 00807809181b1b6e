"""
cluster-orchestrator CLI entry point.

Commands
plan      refresh and print the plan, nothing is written
apply     plan and execute
destroy   delete every recorded resource, dependents first

The provider is the in memory provider. Its resources are kept in a JSON
file between runs so plan, apply and destroy see the same world.
"""

from __future__ import annotations

import json
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.markup import escape

from cluster_orchestrator import __version__
from cluster_orchestrator.agent.engine import OrchestrationEngine
from cluster_orchestrator.agent.guard import ExecutionGuard
from cluster_orchestrator.config import Settings
from cluster_orchestrator.core.errors import ExecutionFailed, OrchestratorError
from cluster_orchestrator.core.logs import configure_logging
from cluster_orchestrator.core.serialization import plan_to_json
from cluster_orchestrator.core.types import Plan
from cluster_orchestrator.declarations import DeclarationDocument, source_for_path
from cluster_orchestrator.execution.base import ExecutorConfig, ProviderRegistry
from cluster_orchestrator.execution.mock import InMemoryProvider
from cluster_orchestrator.state.audit import AuditLogger
from cluster_orchestrator.state.file_store import FileStateStore

console = Console(stderr=True)


def _parse_vars(values: Tuple[str, ...]) -> Dict[str, Any]:
    """Parse key=value pairs. Values are read as YAML, so lists and numbers keep their type."""
    out: Dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--var")
        try:
            out[key.strip()] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError as e:
            raise click.BadParameter(f"invalid value for {key}: {e}", param_hint="--var") from e
    return out


def _load_document(
    config: Optional[str],
    variables: Tuple[str, ...],
) -> Optional[DeclarationDocument]:
    if config is None:
        return None
    doc = source_for_path(Path(config)).load()
    return doc.with_variables(_parse_vars(variables))


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _provider_path(settings: Settings, option: Optional[str]) -> Path:
    return Path(option) if option else settings.provider_state


def _build_engine(
    settings: Settings,
    provider: InMemoryProvider,
    state_dir: Optional[str],
    parallelism: Optional[int],
    refresh: bool,
) -> OrchestrationEngine:
    executor_config = ExecutorConfig(
        max_workers=parallelism or settings.max_workers,
        max_attempts=settings.max_attempts,
        initial_backoff=settings.initial_backoff,
        max_backoff=settings.max_backoff,
    )
    audit = AuditLogger(settings.audit_log) if settings.audit_log is not None else None
    return OrchestrationEngine(
        providers=ProviderRegistry(default=provider),
        store=FileStateStore(root=Path(state_dir) if state_dir else settings.state_dir),
        guard=ExecutionGuard(),
        executor_config=executor_config,
        audit=audit,
        refresh=refresh,
    )


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn the first Ctrl-C into a cancellation so running operations can finish."""
    cancel = threading.Event()

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        console.print(
            "[yellow]Interrupt received, waiting for running operations. "
            "Press Ctrl-C again to abort.[/yellow]"
        )
        cancel.set()

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # not the main thread
        yield cancel
        return
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _print_plan(plan: Plan) -> None:
    for drift in plan.drift:
        click.echo(f"! drift {drift}")
    if plan.drift:
        click.echo("")

    if plan.is_empty:
        click.echo("No changes. Resources match the declarations.")
        return

    for op in plan.operations:
        line = op.describe()
        if op.reason:
            line += f"  # {op.reason}"
        click.echo(line)
    click.echo("")
    click.echo(plan.summary())


def _report_failure(e: OrchestratorError) -> None:
    console.print(f"[red]Error:[/red] {escape(str(e))}")
    if isinstance(e, ExecutionFailed):
        for oid in sorted(e.failures):
            console.print(f"  [red]{escape(oid)}[/red]: {escape(str(e.failures[oid]))}")


def _engine_options(fn):
    options = [
        click.option(
            "--state-dir",
            type=click.Path(file_okay=False),
            default=None,
            help="State directory (default: ORCHESTRATOR_STATE_DIR or .orchestrator/state).",
        ),
        click.option(
            "--provider-state",
            type=click.Path(dir_okay=False),
            default=None,
            help="JSON file holding the simulated provider's resources.",
        ),
        click.option(
            "--var",
            "variables",
            multiple=True,
            metavar="KEY=VALUE",
            help="Override a declaration variable.",
        ),
        click.option(
            "--parallelism",
            type=click.IntRange(min=1),
            default=None,
            help="Maximum concurrent operations.",
        ),
        click.option(
            "--refresh/--no-refresh",
            default=True,
            show_default=True,
            help="Read live state before planning.",
        ),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option(
    "--log-format",
    type=click.Choice(["auto", "console", "json"], case_sensitive=False),
    default=None,
    help="Log rendering (default: ORCHESTRATOR_LOG_FORMAT or auto).",
)
@click.option(
    "--log-level",
    default=None,
    help="Log level (default: ORCHESTRATOR_LOG_LEVEL or info).",
)
@click.pass_context
def cli(ctx: click.Context, log_format: Optional[str], log_level: Optional[str]) -> None:
    """cluster-orchestrator: plan and apply managed Kubernetes declarations."""
    try:
        settings = Settings()
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    configure_logging(
        fmt=(log_format or settings.log_format).lower(),
        level=log_level or settings.log_level,
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="Declaration file or directory.",
)
@_engine_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the plan as JSON.")
@click.option(
    "--detailed-exitcode",
    is_flag=True,
    default=False,
    help="Exit 2 when the plan has changes, 0 when it has none.",
)
@click.pass_context
def plan(
    ctx: click.Context,
    config: str,
    state_dir: Optional[str],
    provider_state: Optional[str],
    variables: Tuple[str, ...],
    parallelism: Optional[int],
    refresh: bool,
    as_json: bool,
    detailed_exitcode: bool,
) -> None:
    """Refresh state and print the plan. Nothing is written."""
    settings = _settings(ctx)
    provider = InMemoryProvider.load(_provider_path(settings, provider_state))
    engine = _build_engine(settings, provider, state_dir, parallelism, refresh)

    try:
        document = _load_document(config, variables)
        result = engine.plan(document)
    except OrchestratorError as e:
        _report_failure(e)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(plan_to_json(result.plan), indent=2, sort_keys=True))
    else:
        _print_plan(result.plan)

    if not result.guard.allowed:
        for reason in result.guard.reasons:
            console.print(f"[yellow]Apply would be refused:[/yellow] {escape(reason)}")

    if detailed_exitcode and result.has_changes:
        sys.exit(2)
    sys.exit(0)


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="Declaration file or directory.",
)
@_engine_options
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.pass_context
def apply(
    ctx: click.Context,
    config: str,
    state_dir: Optional[str],
    provider_state: Optional[str],
    variables: Tuple[str, ...],
    parallelism: Optional[int],
    refresh: bool,
    auto_approve: bool,
) -> None:
    """Plan and execute until resources match the declarations."""
    settings = _settings(ctx)
    provider_path = _provider_path(settings, provider_state)
    provider = InMemoryProvider.load(provider_path)
    engine = _build_engine(settings, provider, state_dir, parallelism, refresh)

    try:
        document = _load_document(config, variables)

        if not auto_approve:
            preview = engine.plan(document)
            _print_plan(preview.plan)
            if preview.plan.is_empty and not preview.plan.drift:
                sys.exit(0)
            click.confirm("Apply these changes?", abort=True)

        with _cancel_on_interrupt() as cancel:
            result = engine.apply(document, cancel=cancel)
    except OrchestratorError as e:
        _report_failure(e)
        sys.exit(1)
    finally:
        provider.save(provider_path)

    if auto_approve:
        _print_plan(result.plan)
    applied = result.applied
    done = len(applied.succeeded) if applied is not None else 0
    unchanged = len(result.plan.unchanged)
    console.print(
        f"[green]Apply complete.[/green] {done} operation(s) done, {unchanged} unchanged."
    )
    sys.exit(0)


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    default=None,
    help="Declaration file or directory. When given, prevent_destroy is honored.",
)
@_engine_options
@click.option("--auto-approve", is_flag=True, default=False, help="Skip the confirmation prompt.")
@click.pass_context
def destroy(
    ctx: click.Context,
    config: Optional[str],
    state_dir: Optional[str],
    provider_state: Optional[str],
    variables: Tuple[str, ...],
    parallelism: Optional[int],
    refresh: bool,
    auto_approve: bool,
) -> None:
    """Delete every recorded resource, dependents first."""
    settings = _settings(ctx)
    provider_path = _provider_path(settings, provider_state)
    provider = InMemoryProvider.load(provider_path)
    engine = _build_engine(settings, provider, state_dir, parallelism, refresh)

    if not auto_approve:
        click.confirm("Destroy every recorded resource?", abort=True)

    try:
        document = _load_document(config, variables)
        with _cancel_on_interrupt() as cancel:
            result = engine.destroy(document, cancel=cancel)
    except OrchestratorError as e:
        _report_failure(e)
        sys.exit(1)
    finally:
        provider.save(provider_path)

    _print_plan(result.plan)
    console.print("[green]Destroy complete.[/green]")
    sys.exit(0)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
