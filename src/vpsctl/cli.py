"""Typer-powered command line interface for ``vpsctl``.

Operators provision hosts (``probe``, ``plan``, ``provision``, ``status``,
``proxy``); CI pipelines drive container releases (``rollout``). Every
reporting command accepts ``--json`` and every invocation is recorded in the
structured operations log.
"""
from __future__ import annotations

import json
import textwrap
import threading
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .desired import DesiredHostState, ProxySite, load_desired_state
from .errors import ConcurrencyConflict, ManifestError, VpsctlError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .probe import ALL_CHECKS, CheckKind, FactStatus, HostProber, ProbedHostState, ProbeScope
from .providers import HostProviders
from .provision import (
    PARTIAL_POLICIES,
    ActionStatus,
    ConfigRenderer,
    ConvergenceReport,
    ProvisionPlan,
    Provisioner,
)
from .rollout import (
    OutcomeStatus,
    RolloutController,
    RolloutOutcome,
    RolloutQueue,
    parse_manifest,
)
from .secrets import SecretResolver, default_store
from .state import RolloutLog, RolloutLogError, StateRegistry, StateRegistryError, host_key
from .templates import TemplateEngine, TemplateRenderError
from .transport import Transport, parse_target

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to vpsctl's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")
CHECK_OPTION = typer.Option(
    None,
    "--check",
    help="Comma-separated check kinds to run (default: all).",
)
DESIRED_SCOPE_OPTION = typer.Option(
    None,
    "--desired",
    dir_okay=False,
    help="Narrow the probe to the resources named in this desired-state file.",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Plan and report without changing the host.",
)
ON_PARTIAL_OPTION = typer.Option(
    None,
    "--on-partial",
    help="What to do when a needed fact is partial: 'fail' or 'converge'.",
)
SITE_OPTION = typer.Option(None, "--site", help="Only handle the named proxy site.")
HISTORY_LIMIT_OPTION = typer.Option(
    20,
    "--limit",
    min=1,
    help="Show at most this many of the newest records.",
)

_STATUS_STYLE = {
    ActionStatus.APPLIED: "[green]applied[/green]",
    ActionStatus.SKIPPED: "[dim]skipped[/dim]",
    ActionStatus.FAILED: "[red]failed[/red]",
    ActionStatus.NOT_RUN: "[yellow]not-run[/yellow]",
}
_FACT_STYLE = {
    FactStatus.OK: "[green]ok[/green]",
    FactStatus.PARTIAL: "[yellow]partial[/yellow]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        VPS deployment orchestrator.

        Provision a host into a known-good state and roll out
        content-addressed container releases with health checks and
        automatic rollback.
        """
    ).strip(),
)
proxy_app = typer.Typer(help="Render and activate reverse-proxy sites.")
rollout_app = typer.Typer(help="Run and inspect container rollouts.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(proxy_app, name="proxy")
app.add_typer(rollout_app, name="rollout")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    rollouts: RolloutLog
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    renderer: ConfigRenderer
    resolver: SecretResolver


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
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
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(
        config=config,
        registry=StateRegistry(config.registry_dir),
        rollouts=RolloutLog(config.state_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=logger,
        templates=templates,
        renderer=ConfigRenderer(templates, live_dir=str(config.tls.live_dir)),
        resolver=SecretResolver(
            default_store(config.secrets.directory),
            config.secrets.scopes,
            logger=logger,
        ),
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
        help="Show the vpsctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"vpsctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _vpsctl_error(op: OperationScope, exc: VpsctlError) -> NoReturn:
    _command_error(op, str(exc), rc=int(exc.exit_code), errors=[json.dumps(exc.context())])


def _print_json(payload: object, *, indent: int | None = 2) -> None:
    console.print(
        json.dumps(payload, indent=indent, default=str),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def _connect(runtime: RuntimeContext, target: str) -> Transport:
    """Return the transport for ``target`` using the configured ssh settings."""
    return parse_target(target, runtime.config.ssh)


def _host_providers(runtime: RuntimeContext, target: str) -> HostProviders:
    """Wire the providers acting on ``target``."""
    return HostProviders.for_transport(_connect(runtime, target), runtime.config, runtime.templates)


def _host_name(op: OperationScope, target: str) -> str:
    try:
        return parse_target(target).host
    except ValueError as exc:
        _command_error(op, str(exc))


def _build_prober(runtime: RuntimeContext, providers: HostProviders) -> HostProber:
    probe_config = runtime.config.probe
    return HostProber(
        providers,
        retries=probe_config.retries,
        retry_delay=probe_config.retry_delay,
        timeout=probe_config.timeout,
    )


def _build_provisioner(
    runtime: RuntimeContext,
    providers: HostProviders,
    on_partial: str | None,
) -> Provisioner:
    config = runtime.config
    return Provisioner(
        providers,
        renderer=runtime.renderer,
        prober=_build_prober(runtime, providers),
        locks=runtime.locks,
        marker_path=config.provision.marker_path,
        registry=runtime.registry,
        resolver=runtime.resolver,
        logger=runtime.logger,
        on_partial=on_partial or config.provision.on_partial,
        container_prefix=config.containers.name_prefix,
    )


def _build_controller(runtime: RuntimeContext, providers: HostProviders) -> RolloutController:
    config = runtime.config
    return RolloutController(
        providers.containers,
        runtime.rollouts,
        name_prefix=config.containers.name_prefix,
        registry=config.containers.registry,
        registry_user=config.containers.registry_user,
        registry_secret=config.containers.registry_secret,
        resolver=runtime.resolver,
        logger=runtime.logger,
        pull_attempts=config.rollout.pull_attempts,
        pull_backoff=config.rollout.pull_backoff,
        health_timeout=config.rollout.health_timeout,
        health_interval=config.rollout.health_interval,
    )


def _load_desired(op: OperationScope, runtime: RuntimeContext, path: Path) -> DesiredHostState:
    try:
        return load_desired_state(path, renew_before_days=runtime.config.tls.renew_before_days)
    except VpsctlError as exc:
        _vpsctl_error(op, exc)


def _validate_on_partial(op: OperationScope, value: str | None) -> None:
    if value is not None and value not in PARTIAL_POLICIES:
        _command_error(
            op,
            f"Unsupported --on-partial value '{value}'. Choose from: "
            + ", ".join(PARTIAL_POLICIES),
        )


def _select_sites(
    op: OperationScope, desired: DesiredHostState, site: str | None
) -> tuple[ProxySite, ...]:
    sites = desired.proxy_sites
    if site is not None:
        sites = tuple(item for item in sites if item.name == site)
        if not sites:
            _command_error(op, f"Desired state has no proxy site named '{site}'.")
    if not sites:
        _command_error(op, "Desired state declares no proxy sites.")
    return sites


def _render_probe(probed: ProbedHostState) -> None:
    console.print(f"Host: [bold]{probed.host}[/bold] (captured {probed.captured_at.isoformat()})")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Duration")
    table.add_column("Detail")
    for kind, fact in probed.facts.items():
        detail = fact.error or ", ".join(sorted(fact.value)) or "-"
        table.add_row(
            kind.value,
            _FACT_STYLE[fact.status],
            str(fact.attempts),
            f"{fact.duration_ms} ms",
            escape(detail),
        )
    console.print(table)


def _render_plan(plan: ProvisionPlan) -> None:
    if plan.probed.partial_kinds:
        console.print(
            "[yellow]Partial facts: "
            + ", ".join(kind.value for kind in plan.probed.partial_kinds)
            + "[/yellow]"
        )
    if not plan.actions:
        console.print("[green]Host already matches the desired state.[/green]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#")
    table.add_column("Phase")
    table.add_column("Action", style="bold")
    table.add_column("Description")
    for index, action in enumerate(plan.actions, start=1):
        table.add_row(str(index), action.phase.label, action.id, action.description)
    console.print(table)


def _render_report(report: ConvergenceReport) -> None:
    heading = "Dry run" if report.dry_run else "Convergence report"
    console.print(
        f"{heading} for [bold]{report.host}[/bold] "
        f"(desired {report.desired_checksum[:12]}, exit={int(report.exit_code)})"
    )
    if not report.outcomes:
        console.print("[green]Nothing to do; host already converged.[/green]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Action", style="bold")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Detail")
    for outcome in report.outcomes:
        table.add_row(
            outcome.action.id,
            _STATUS_STYLE[outcome.status],
            f"{outcome.duration_ms} ms",
            escape(outcome.detail),
        )
    console.print(table)
    summary = ", ".join(
        f"{status.value}={report.count(status)}" for status in ActionStatus
    )
    console.print(f"Summary: {summary}")


def _render_outcome(outcome: RolloutOutcome) -> None:
    style = "green" if outcome.status is OutcomeStatus.SUCCESS else "red"
    if outcome.status is OutcomeStatus.SUPERSEDED:
        style = "yellow"
    console.print(
        f"[{style}]Rollout {outcome.rollout_id} ({outcome.manifest_version}) on "
        f"{outcome.host}: {outcome.status.value}[/{style}]"
    )
    console.print(f"  final state: {outcome.final_state.value}")
    console.print(f"  host state: {outcome.host_state.value}")
    if outcome.reason:
        console.print(f"  reason: {outcome.reason}", markup=False)


def _future_payload(
    runtime: RuntimeContext, future: Future[RolloutOutcome], host: str, version: str
) -> dict[str, object]:
    """Return the outcome line for a finished trigger, even one that raised."""
    error = future.exception()
    if error is None:
        return future.result().to_dict()
    exit_code = error.exit_code if isinstance(error, VpsctlError) else ExitCode.PROVIDER
    return {
        "id": None,
        "host": host,
        "manifest_version": version,
        "status": OutcomeStatus.FAILURE.value,
        "final_state": None,
        "host_state": None,
        "reason": runtime.logger.redact(f"{type(error).__name__}: {error}"),
        "exit_code": int(exit_code),
    }


def _finish_outcome(op: OperationScope, outcome: RolloutOutcome) -> None:
    context = {"outcome": outcome.to_dict()}
    if outcome.status is OutcomeStatus.SUCCESS:
        op.success("Rollout reached a stable state.", context=context)
        return
    op.error(
        outcome.reason or "Rollout failed.",
        rc=int(outcome.exit_code),
        context=context,
    )
    raise typer.Exit(code=int(outcome.exit_code))


# ----------------------------------------------------------------------
# Provisioning commands
# ----------------------------------------------------------------------
@app.command()
def probe(
    ctx: typer.Context,
    host: str = typer.Argument(..., help="Target host: user@host[:port] or 'local'."),
    check: str | None = CHECK_OPTION,
    desired: Path | None = DESIRED_SCOPE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Gather host facts without changing anything."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "probe",
        args={"check": check, "desired": str(desired) if desired else None, "json": json_output},
        target={"kind": "host", "host": host},
    ) as op:
        try:
            kinds = CheckKind.parse(check.split(",")) if check else ALL_CHECKS
        except ValueError as exc:
            _command_error(op, str(exc))
        if desired is not None:
            scope = ProbeScope.from_desired(
                _load_desired(op, runtime, desired),
                container_prefix=runtime.config.containers.name_prefix,
            )
        else:
            scope = ProbeScope(container_prefix=runtime.config.containers.name_prefix)

        try:
            providers = _host_providers(runtime, host)
            probed = _build_prober(runtime, providers).probe(kinds, scope=scope)
        except ValueError as exc:
            _command_error(op, str(exc))
        except VpsctlError as exc:
            _vpsctl_error(op, exc)

        if json_output:
            _print_json(probed.to_dict())
        else:
            _render_probe(probed)

        partial = [kind.value for kind in probed.partial_kinds]
        if partial:
            op.warning("Probe completed with partial facts.", warnings=partial)
        else:
            op.success("Probe completed.", changed=0)


@app.command()
def plan(
    ctx: typer.Context,
    desired: Path = typer.Argument(..., dir_okay=False, help="Desired-state YAML file."),
    host: str = typer.Argument(..., help="Target host: user@host[:port] or 'local'."),
    on_partial: str | None = ON_PARTIAL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the actions ``provision`` would apply."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"desired": str(desired), "on_partial": on_partial, "json": json_output},
        target={"kind": "host", "host": host},
    ) as op:
        _validate_on_partial(op, on_partial)
        state = _load_desired(op, runtime, desired)
        try:
            provisioner = _build_provisioner(runtime, _host_providers(runtime, host), on_partial)
            planned = provisioner.plan(state)
        except (TemplateRenderError, ValueError) as exc:
            _command_error(op, str(exc))
        except VpsctlError as exc:
            _vpsctl_error(op, exc)

        if json_output:
            payload = planned.to_dict()
            payload["desired_checksum"] = state.checksum
            _print_json(payload)
        else:
            _render_plan(planned)
        op.success(
            f"Planned {len(planned.actions)} action(s).",
            changed=0,
            context={"actions": [action.id for action in planned.actions]},
        )


@app.command()
def provision(
    ctx: typer.Context,
    desired: Path = typer.Argument(..., dir_okay=False, help="Desired-state YAML file."),
    host: str = typer.Argument(..., help="Target host: user@host[:port] or 'local'."),
    dry_run: bool = DRY_RUN_OPTION,
    on_partial: str | None = ON_PARTIAL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Converge a host to the desired state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "provision",
        args={
            "desired": str(desired),
            "dry_run": dry_run,
            "on_partial": on_partial,
            "json": json_output,
        },
        target={"kind": "host", "host": host},
    ) as op:
        _validate_on_partial(op, on_partial)
        state = _load_desired(op, runtime, desired)
        try:
            provisioner = _build_provisioner(runtime, _host_providers(runtime, host), on_partial)
            report = provisioner.provision(state, dry_run=dry_run)
        except (TemplateRenderError, ValueError) as exc:
            _command_error(op, str(exc))
        except VpsctlError as exc:
            _vpsctl_error(op, exc)
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        payload = report.to_dict()
        if json_output:
            _print_json(payload)
        else:
            _render_report(report)

        for outcome in report.outcomes:
            op.add_step(outcome.action.id, status=outcome.status.value, detail=outcome.detail)
        changed = report.count(ActionStatus.APPLIED)
        failed = report.failed
        if failed is None:
            op.success(
                "Dry run complete." if dry_run else "Host converged.",
                changed=changed,
                context={"summary": payload["summary"]},
            )
            return
        op.error(
            f"Action {failed.action.id} failed: {failed.detail}",
            rc=int(report.exit_code),
            context={"summary": payload["summary"], "error": dict(failed.error or {})},
        )
        raise typer.Exit(code=int(report.exit_code))


@app.command()
def status(
    ctx: typer.Context,
    host: str = typer.Argument(..., help="Host whose last convergence report to show."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the last recorded convergence report for a host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "host", "host": host},
    ) as op:
        name = _host_name(op, host)
        try:
            report = runtime.registry.read_provision_report(name)
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        if report is None:
            _command_error(
                op, f"No convergence report recorded for {name}.", rc=ExitCode.VALIDATION
            )

        if json_output:
            _print_json(dict(report))
            op.success("Reported last convergence as JSON.", changed=0)
            return

        console.print(
            f"Last convergence for [bold]{name}[/bold]: "
            f"{report.get('finished_at', '?')} (exit={report.get('exit_code', '?')})"
        )
        summary = report.get("summary")
        if isinstance(summary, Mapping):
            console.print(
                "Summary: " + ", ".join(f"{key}={value}" for key, value in summary.items())
            )
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Action", style="bold")
        table.add_column("Status")
        table.add_column("Detail")
        for entry in report.get("actions") or []:
            if isinstance(entry, Mapping):
                table.add_row(
                    str(entry.get("id", "")),
                    str(entry.get("status", "")),
                    str(entry.get("detail", "")),
                )
        console.print(table)
        op.success("Reported last convergence.", changed=0)


# ----------------------------------------------------------------------
# Reverse proxy
# ----------------------------------------------------------------------
@proxy_app.command("render")
def proxy_render(
    ctx: typer.Context,
    desired: Path = typer.Argument(..., dir_okay=False, help="Desired-state YAML file."),
    site: str | None = SITE_OPTION,
) -> None:
    """Print the rendered nginx configuration for proxy sites."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "proxy render",
        args={"desired": str(desired), "site": site},
        target={"kind": "proxy"},
    ) as op:
        state = _load_desired(op, runtime, desired)
        sites = _select_sites(op, state, site)
        try:
            rendered = [(item.name, runtime.renderer.site(item)) for item in sites]
        except TemplateRenderError as exc:
            _command_error(op, str(exc))
        for name, text in rendered:
            console.print(f"# site: {name}", markup=False, highlight=False)
            console.print(text, markup=False, highlight=False)
        op.success(f"Rendered {len(sites)} site(s).", changed=0)


@proxy_app.command("apply")
def proxy_apply(
    ctx: typer.Context,
    desired: Path = typer.Argument(..., dir_okay=False, help="Desired-state YAML file."),
    host: str = typer.Argument(..., help="Target host: user@host[:port] or 'local'."),
    site: str | None = SITE_OPTION,
) -> None:
    """Validate and activate proxy sites on a host without a full converge."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "proxy apply",
        args={"desired": str(desired), "site": site},
        target={"kind": "host", "host": host},
    ) as op:
        state = _load_desired(op, runtime, desired)
        sites = _select_sites(op, state, site)
        changed = 0
        try:
            providers = _host_providers(runtime, host)
            with runtime.locks.provision_lock(providers.host):
                for item in sites:
                    result = providers.proxy.apply(item)
                    op.add_step(
                        f"proxy.{item.name}",
                        status="changed" if result.changed else "unchanged",
                        detail=result.digest,
                    )
                    if result.changed:
                        changed += 1
                        console.print(f"[green]Activated site '{item.name}'.[/green]")
                    else:
                        console.print(f"Site '{item.name}' already up to date.")
        except (TemplateRenderError, ValueError) as exc:
            _command_error(op, str(exc))
        except VpsctlError as exc:
            _vpsctl_error(op, exc)
        op.success(f"Applied {len(sites)} site(s).", changed=changed)


# ----------------------------------------------------------------------
# Rollouts
# ----------------------------------------------------------------------
def _read_document(op: OperationScope, path: Path) -> Mapping[str, object]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        _command_error(op, f"Cannot read manifest {path}: {exc}")
    except yaml.YAMLError as exc:
        _command_error(op, f"Invalid YAML in manifest {path}: {exc}")
    if not isinstance(raw, Mapping):
        _command_error(op, f"Manifest {path} must be a mapping.")
    return raw


@rollout_app.command("trigger")
def rollout_trigger(
    ctx: typer.Context,
    manifest: Path = typer.Argument(..., dir_okay=False, help="Deployment manifest (YAML/JSON)."),
    host: str = typer.Argument(..., help="Target host: user@host[:port] or 'local'."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Roll a manifest out to a host and report the outcome."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollout trigger",
        args={"manifest": str(manifest), "json": json_output},
        target={"kind": "host", "host": host},
    ) as op:
        document = _read_document(op, manifest)
        try:
            providers = _host_providers(runtime, host)
            controller = _build_controller(runtime, providers)
            with runtime.locks.rollout_lock(providers.host):
                outcome = controller.deploy(document)
        except ConcurrencyConflict as exc:
            _command_error(
                op, f"A rollout is already in flight for {host}: {exc}", rc=ExitCode.CONFLICT
            )
        except ValueError as exc:
            _command_error(op, str(exc))
        except VpsctlError as exc:
            _vpsctl_error(op, exc)

        if json_output:
            _print_json(outcome.to_dict())
        else:
            _render_outcome(outcome)
        _finish_outcome(op, outcome)


@rollout_app.command("serve")
def rollout_serve(
    ctx: typer.Context,
    host: str = typer.Argument(..., help="Target host: user@host[:port] or 'local'."),
) -> None:
    """Read CI events (JSON lines) from stdin and roll them out in order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollout serve",
        args={"queue_depth": runtime.config.rollout.queue_depth},
        target={"kind": "host", "host": host},
    ) as op:
        stdin = typer.get_text_stream("stdin")
        emitted: list[dict[str, object]] = []
        emit_lock = threading.Lock()

        def emit(payload: dict[str, object]) -> None:
            with emit_lock:
                _print_json(payload, indent=None)
                op.add_step(
                    str(payload.get("id") or f"trigger.{len(emitted) + 1}"),
                    status=str(payload["status"]),
                    detail=payload.get("reason"),
                )
                emitted.append(payload)

        def emit_when_done(version: str) -> Callable[[Future[RolloutOutcome]], None]:
            def callback(future: Future[RolloutOutcome]) -> None:
                emit(_future_payload(runtime, future, host, version))

            return callback

        try:
            providers = _host_providers(runtime, host)
            controller = _build_controller(runtime, providers)
            with runtime.locks.rollout_lock(providers.host):
                with RolloutQueue(controller, depth=runtime.config.rollout.queue_depth) as queue:
                    for number, line in enumerate(stdin, start=1):
                        if not line.strip():
                            continue
                        try:
                            event = json.loads(line)
                        except ValueError as exc:
                            with emit_lock:
                                op.add_step(
                                    f"event.{number}", status="rejected", detail=str(exc)
                                )
                                _print_json(
                                    {"line": number, "status": "invalid", "reason": str(exc)},
                                    indent=None,
                                )
                            continue
                        try:
                            manifest = parse_manifest(event)
                        except ManifestError:
                            # Recorded as a failed rollout without touching the host.
                            raw = event if isinstance(event, Mapping) else {}
                            emit(controller.deploy(raw).to_dict())
                            continue
                        queue.submit(manifest).add_done_callback(
                            emit_when_done(manifest.version)
                        )
        except ConcurrencyConflict as exc:
            _command_error(
                op, f"A rollout is already in flight for {host}: {exc}", rc=ExitCode.CONFLICT
            )
        except ValueError as exc:
            _command_error(op, str(exc))
        except VpsctlError as exc:
            _vpsctl_error(op, exc)

        failures = [
            int(payload["exit_code"])  # type: ignore[call-overload]
            for payload in emitted
            if payload["status"] == OutcomeStatus.FAILURE.value
        ]
        if failures:
            op.error("At least one rollout failed.", rc=failures[0])
            raise typer.Exit(code=failures[0])
        op.success(f"Processed {len(emitted)} trigger(s).", changed=len(emitted))


@rollout_app.command("history")
def rollout_history(
    ctx: typer.Context,
    host: str = typer.Argument(..., help="Host whose rollout records to show."),
    limit: int = HISTORY_LIMIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded rollouts for a host, newest last."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollout history",
        args={"limit": limit, "json": json_output},
        target={"kind": "host", "host": host},
    ) as op:
        name = _host_name(op, host)
        try:
            entries = runtime.rollouts.entries(name)[-limit:]
        except RolloutLogError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if json_output:
            _print_json({"host": host_key(name), "rollouts": entries})
            op.success("Reported rollout history as JSON.", changed=0)
            return
        if not entries:
            console.print(f"No rollouts recorded for {name}.")
            op.success("No rollout history.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Version")
        table.add_column("Outcome")
        table.add_column("State")
        table.add_column("Started")
        table.add_column("Rollback of")
        table.add_column("Reason")
        for entry in entries:
            table.add_row(
                str(entry.get("id", "")),
                str(entry.get("manifest_version", "")),
                str(entry.get("outcome", "")),
                str(entry.get("state", "")),
                str(entry.get("started_at", "")),
                str(entry.get("rollback_of") or "-"),
                str(entry.get("reason") or ""),
            )
        console.print(table)
        op.success("Reported rollout history.", changed=0)


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
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
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["app"]
