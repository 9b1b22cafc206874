"""Typer-powered command line interface for ``padctl``.

The CLI is a thin, non-interactive layer over the instance initializer and
manager. It turns ``--set`` assignments and ``--input-file`` documents into a
:class:`PartialInput`, calls the lifecycle verb and renders the result with
Rich. Failures are printed with the detail level selected by ``--verbose`` (or
``environment: development`` in the configuration) and mapped onto
:class:`ExitCode` values.
"""
from __future__ import annotations

import contextlib
import json
import signal
import textwrap
import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import FrameType
from typing import Any, NoReturn, TypeVar, cast

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .cancel import CancelToken
from .config import AppConfig, ConfigError, load_config
from .errors import (
    ConfigurationError,
    ConflictError,
    FieldIssue,
    NotFoundError,
    OperationInterrupted,
    PadctlError,
    ProviderError,
    describe_error,
)
from .exit_codes import ExitCode
from .instances import InstanceInitializer, InstanceManager, OperationResult, state_of
from .locking import LockManager, LockTimeoutError
from .logging import StructuredLogger, redact_secrets
from .providers import ProviderRegistry
from .providers.builtin import register_builtin_providers
from .state import UNSET, PartialInput, StateBuilder, StateParser, StateStore

T = TypeVar("T")

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to padctl's YAML config file.",
)
INPUT_FILE_OPTION = typer.Option(
    None,
    "--input-file",
    exists=True,
    dir_okay=False,
    help="YAML document with provision/configuration input to merge.",
)
SET_OPTION = typer.Option(
    None,
    "--set",
    help=(
        "Assign a value by dotted path, e.g. provision.input.region=fr-par, "
        "configuration.input.locale=fr_FR or deferred.data_disk_profile=high. "
        "Values are parsed as YAML."
    ),
)
JSON_OPTION = typer.Option(False, "--json", help="Emit JSON instead of a table.")

ASSIGNMENT_PREFIXES = {
    "provision.input": "provision",
    "configuration.input": "configuration",
    "deferred": "deferred",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage cloud gaming instances across interchangeable cloud providers.

        Each instance is described by a versioned state record stored under
        the padctl state directory; every command validates that record
        before acting on it.
        """
    ).strip(),
)
instances_app = typer.Typer(help="Create, inspect and control instances.")
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(instances_app, name="instance")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: ProviderRegistry
    store: StateStore
    builder: StateBuilder
    locks: LockManager
    logger: StructuredLogger
    initializer: InstanceInitializer
    manager: InstanceManager
    verbose: bool


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
    verbose: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        _print_error(exc, verbose=verbose)
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    registry = register_builtin_providers(ProviderRegistry(), config)
    parser = StateParser(registry)
    store = StateStore(config.instances_dir, parser, lock_timeout=config.lock_timeout)
    builder = StateBuilder(registry, parser)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        store=store,
        builder=builder,
        locks=locks,
        logger=logger,
        initializer=InstanceInitializer(store, builder, registry, logger=logger, locks=locks),
        manager=InstanceManager(store, builder, registry, logger=logger, locks=locks),
        verbose=verbose or config.verbose_errors,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the padctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Include structured context in error output.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"padctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout, verbose)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Error handling
# ----------------------------------------------------------------------
def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code reported for *exc*."""
    if isinstance(exc, OperationInterrupted):
        return ExitCode.INTERRUPTED
    if isinstance(exc, NotFoundError):
        return ExitCode.NOT_FOUND
    if isinstance(exc, ConflictError):
        return ExitCode.CONFLICT
    if isinstance(exc, ProviderError):
        return ExitCode.PROVIDER
    if isinstance(exc, ConfigurationError):
        return ExitCode.VALIDATION
    # Config files, the state directory and lock timeouts.
    return ExitCode.ENVIRONMENT


def _print_error(exc: BaseException, *, verbose: bool) -> None:
    details = describe_error(exc, verbose=verbose)
    err_console.print(f"[red]{escape(str(details.get('message')))}[/red]")
    issues = cast("list[dict[str, str]]", details.get("issues") or [])
    for issue in issues:
        err_console.print(escape(f"  - {issue['path']}: {issue['message']}"))
    for suggestion in cast("list[str]", details.get("suggestions") or []):
        err_console.print(f"[yellow]hint:[/yellow] {escape(str(suggestion))}")
    if verbose and details.get("context"):
        err_console.print_json(data=_jsonable(details["context"]))
    if verbose and details.get("cause"):
        err_console.print(f"[dim]caused by {escape(str(details['cause']))}[/dim]")


def _command_error(runtime: RuntimeContext, exc: BaseException) -> NoReturn:
    """Print *exc* and terminate with its exit code."""
    _print_error(exc, verbose=runtime.verbose)
    raise typer.Exit(code=int(exit_code_for(exc)))


def _invoke(runtime: RuntimeContext, action: Callable[[], T]) -> T:
    try:
        return action()
    except (PadctlError, LockTimeoutError) as exc:
        _command_error(runtime, exc)


@contextlib.contextmanager
def _cancel_on_signal() -> Iterator[CancelToken]:
    """Yield a token cancelled by SIGINT/SIGTERM while the block runs."""
    token = CancelToken()
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        token.cancel(signal.Signals(signum).name)

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# ----------------------------------------------------------------------
# Input handling
# ----------------------------------------------------------------------
def _assign_nested(target: dict[str, Any], parts: Sequence[str], value: object) -> None:
    current = target
    for part in parts[:-1]:
        existing = current.get(part)
        if not isinstance(existing, dict):
            existing = {}
            current[part] = existing
        current = existing
    current[parts[-1]] = value


def _parse_assignment(raw: str) -> tuple[str, list[str], object]:
    key, sep, value = raw.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ConfigurationError(
            f"Invalid assignment {raw!r}.",
            issues=(FieldIssue("--set", "expected KEY=VALUE"),),
        )
    for prefix, section in ASSIGNMENT_PREFIXES.items():
        if key.startswith(f"{prefix}."):
            parts = [part for part in key[len(prefix) + 1 :].split(".") if part]
            if parts:
                try:
                    parsed = yaml.safe_load(value) if value.strip() else ""
                except yaml.YAMLError:
                    parsed = value
                return section, parts, parsed
    raise ConfigurationError(
        f"Invalid assignment key {key!r}.",
        issues=(
            FieldIssue(
                "--set",
                "key must start with provision.input., configuration.input. or deferred.",
            ),
        ),
    )


def _read_input_file(path: Path) -> dict[str, dict[str, Any]]:
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(
            f"Cannot read input file {path}: {exc}",
            issues=(FieldIssue("--input-file", "unreadable YAML document"),),
            cause=exc,
        ) from exc
    issues: list[FieldIssue] = []
    sections: dict[str, dict[str, Any]] = {"provision": {}, "configuration": {}, "deferred": {}}
    if not isinstance(document, Mapping):
        issues.append(FieldIssue("<document>", "expected a mapping"))
        document = {}
    for key, value in document.items():
        if key in ("provision", "configuration"):
            if not isinstance(value, Mapping) or not isinstance(value.get("input", {}), Mapping):
                issues.append(FieldIssue(f"{key}.input", "expected a mapping"))
                continue
            sections[key] = dict(value.get("input") or {})
        elif key == "deferred" and isinstance(value, Mapping):
            sections["deferred"] = dict(value)
        else:
            issues.append(FieldIssue(str(key), "unknown or invalid section"))
    if issues:
        raise ConfigurationError(f"Invalid input file {path}.", issues=issues)
    return sections


def build_partial_input(
    *,
    name: str | None = None,
    provider: str | None = None,
    configurator: str | None = None,
    input_file: Path | None = None,
    assignments: Sequence[str] | None = None,
) -> PartialInput:
    """Return the :class:`PartialInput` described by CLI options."""
    sections: dict[str, dict[str, Any]] = {"provision": {}, "configuration": {}, "deferred": {}}
    if input_file is not None:
        sections = _read_input_file(input_file)
    for raw in assignments or ():
        section, parts, value = _parse_assignment(raw)
        _assign_nested(sections[section], parts, value)
    return PartialInput(
        name=UNSET if name is None else name,
        provider=UNSET if provider is None else provider,
        configurator=UNSET if configurator is None else configurator,
        provision=sections["provision"],
        configuration=sections["configuration"],
        deferred=sections["deferred"],
    )


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------
def _jsonable(value: object) -> object:
    return json.loads(json.dumps(value, default=str))


def _render_result(result: OperationResult, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data=_jsonable(result.to_dict()))
        return
    style = "green" if result.changed else "cyan"
    console.print(f"[{style}]{escape(result.message)}[/{style}]")
    console.print(f"state: {result.state.value}")


def _render_mapping_table(title: str, data: Mapping[str, object]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True, default=str)
        else:
            rendered = "" if value is None else str(value)
        table.add_row(str(key), rendered)
    return table


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
        else:
            console.print(_render_mapping_table("padctl configuration", data))
        op.success("Rendered configuration.", changed=0)


# ----------------------------------------------------------------------
# instance: read-only
# ----------------------------------------------------------------------
@instances_app.command("list")
def instance_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List stored instances with their provider and lifecycle state."""
    runtime = _get_runtime(ctx)
    summaries = _invoke(runtime, runtime.manager.list_instances)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "store"},
    ) as op:
        if json_output:
            console.print_json(data={"instances": [item.to_dict() for item in summaries]})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Provider")
        table.add_column("State")
        table.add_column("Problem")
        if not summaries:
            table.add_row("(none)", "", "", "")
        for item in summaries:
            table.add_row(
                item.name,
                item.provider or "",
                item.state.value if item.state else "",
                item.error or "",
            )
        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the validated state record of an instance (secrets redacted)."""
    runtime = _get_runtime(ctx)
    loaded = _invoke(runtime, lambda: runtime.manager.show(name))
    record = cast("dict[str, Any]", redact_secrets(loaded.state.to_dict()))
    payload = {
        "state": record,
        "lifecycle": state_of(loaded.state).value,
        "fingerprint": loaded.fingerprint,
    }
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        if json_output:
            console.print_json(data=_jsonable(payload))
            op.success("Displayed instance details as JSON.", changed=0)
            return
        summary = {
            "name": record["name"],
            "version": record["version"],
            "provider": record["provision"]["provider"],
            "configurator": record["configuration"]["configurator"],
            "lifecycle": payload["lifecycle"],
            "fingerprint": loaded.fingerprint,
        }
        console.print(_render_mapping_table(f"Instance {name}", summary))
        console.print(_render_mapping_table("provision.input", record["provision"]["input"]))
        if "output" in record["provision"]:
            console.print(
                _render_mapping_table("provision.output", record["provision"]["output"])
            )
        console.print(
            _render_mapping_table("configuration.input", record["configuration"]["input"])
        )
        op.success("Displayed instance details.", changed=0)


@instances_app.command("status")
def instance_status(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to query."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report the live lifecycle state of an instance."""
    runtime = _get_runtime(ctx)
    result = _invoke(runtime, lambda: runtime.manager.status(name))
    _render_result(result, json_output=json_output)


# ----------------------------------------------------------------------
# instance: lifecycle verbs
# ----------------------------------------------------------------------
@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to create."),
    provider: str | None = typer.Option(
        None,
        "--provider",
        "-p",
        help="Provider tag (aws, azure, gcp, scaleway, dummy). Required unless resuming.",
    ),
    configurator: str | None = typer.Option(
        None,
        "--configurator",
        help="Configurator tag (defaults to ansible).",
    ),
    input_file: Path | None = INPUT_FILE_OPTION,
    assignments: list[str] | None = SET_OPTION,
    resume: bool = typer.Option(
        False,
        "--resume",
        help="Provision an existing record whose previous creation did not complete.",
    ),
    configure: bool = typer.Option(
        False,
        "--configure",
        help="Apply the configuration once provisioning succeeded.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Create and provision a new instance."""
    runtime = _get_runtime(ctx)
    partial = _invoke(
        runtime,
        lambda: build_partial_input(
            name=name,
            provider=provider,
            configurator=configurator,
            input_file=input_file,
            assignments=assignments,
        ),
    )
    with _cancel_on_signal() as cancel:
        result = _invoke(
            runtime,
            lambda: runtime.initializer.initialize(
                partial, resume=resume, configure=configure, cancel=cancel
            ),
        )
    _render_result(result, json_output=json_output)


@instances_app.command("update")
def instance_update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to update."),
    input_file: Path | None = INPUT_FILE_OPTION,
    assignments: list[str] | None = SET_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Merge new input into an instance and reconcile its infrastructure."""
    runtime = _get_runtime(ctx)
    partial = _invoke(
        runtime,
        lambda: build_partial_input(input_file=input_file, assignments=assignments),
    )
    with _cancel_on_signal() as cancel:
        result = _invoke(runtime, lambda: runtime.manager.update(name, partial, cancel=cancel))
    _render_result(result, json_output=json_output)


@instances_app.command("configure")
def instance_configure(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to configure."),
    input_file: Path | None = INPUT_FILE_OPTION,
    assignments: list[str] | None = SET_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Apply (and optionally change) the software configuration of an instance."""
    runtime = _get_runtime(ctx)
    partial: PartialInput | None = None
    if input_file is not None or assignments:
        partial = _invoke(
            runtime,
            lambda: build_partial_input(input_file=input_file, assignments=assignments),
        )
    with _cancel_on_signal() as cancel:
        result = _invoke(
            runtime, lambda: runtime.manager.configure(name, partial, cancel=cancel)
        )
    _render_result(result, json_output=json_output)


def _runner_verb(
    ctx: typer.Context,
    name: str,
    json_output: bool,
    verb: Callable[[InstanceManager], Callable[..., OperationResult]],
) -> None:
    runtime = _get_runtime(ctx)
    method = verb(runtime.manager)
    with _cancel_on_signal() as cancel:
        result = _invoke(runtime, lambda: method(name, cancel=cancel))
    _render_result(result, json_output=json_output)


@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Start the instance server."""
    _runner_verb(ctx, name, json_output, lambda manager: manager.start)


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to stop."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop the instance server."""
    _runner_verb(ctx, name, json_output, lambda manager: manager.stop)


@instances_app.command("restart")
def instance_restart(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to restart."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop then start the instance server."""
    _runner_verb(ctx, name, json_output, lambda manager: manager.restart)


@instances_app.command("destroy")
def instance_destroy(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to destroy."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Release the instance infrastructure, then delete its state record."""
    _runner_verb(ctx, name, json_output, lambda manager: manager.destroy)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "build_partial_input", "exit_code_for", "main"]
