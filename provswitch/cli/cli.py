"""Main CLI entry point for provswitch.

Provider profiles live in one JSON document (``~/.provswitch.json`` by default).
Endpoint edits go through an ``EditSession`` so the command line follows the
same draft-then-commit path as an interactive editor would.
"""

import asyncio
import json
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from provswitch import __version__
from provswitch.core.candidates import EndpointOrigin
from provswitch.core.config import (
    AppType,
    ConfigManager,
    ProviderConfig,
    ProviderProfile,
    format_for_app,
)
from provswitch.core.config_bridge import ModelSlot, bridge_for
from provswitch.core.endpoints import validate
from provswitch.core.errors import EndpointError
from provswitch.core.persistence import ConfigEndpointStore
from provswitch.core.session import EditSession
from provswitch.utils.json_utils import validate_auth_json
from provswitch.utils.log import enable_file_logging, get_logger
from provswitch.utils.toml_text import normalize_quotes, validate_toml


console = Console()
logger = get_logger()


@contextmanager
def _endpoint_errors() -> Iterator[None]:
    try:
        yield
    except EndpointError as exc:
        logger.debug(
            "[cli] Command failed",
            extra={"error_code": exc.error_code, "error": str(exc)},
        )
        raise click.ClickException(str(exc)) from exc


def _manager(ctx: click.Context) -> ConfigManager:
    return ctx.ensure_object(dict)["manager"]


def _parse_app(name: str) -> AppType:
    try:
        return AppType(name)
    except ValueError as exc:
        raise click.ClickException(f"Unknown app '{name}'. Use claude, codex or gemini.") from exc


def _mask(secret: Optional[str]) -> str:
    if not secret:
        return "Not set"
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-4:]}"


def _open_session(manager: ConfigManager, provider_id: str, **kwargs: Any) -> EditSession:
    profile = manager.get_provider(provider_id)
    settings = manager.get_global_config()
    kwargs.setdefault("auto_select", settings.auto_select)
    kwargs.setdefault("warmup", settings.warmup_probe)
    kwargs.setdefault("probe_timeouts_ms", settings.probe_timeouts_ms)
    return EditSession(
        profile.app_type,
        profile.config,
        provider_id=profile.id,
        store=ConfigEndpointStore(manager),
        preset_candidates=profile.endpoint_candidates,
        **kwargs,
    )


def _save_session(manager: ConfigManager, provider_id: str, session: EditSession) -> None:
    """Write the edited blob back, then commit the endpoint draft."""
    if session.config != manager.get_provider(provider_id).config:
        manager.update_provider_config(provider_id, session.config)
    session.commit()


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="PROVSWITCH_CONFIG",
    help="Path to the provider configuration file.",
)
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Also write debug logs to this file.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], log_file: Optional[Path]) -> None:
    """provswitch - switch AI CLI providers and pick the fastest endpoint"""
    if log_file:
        enable_file_logging(log_file)
    manager = ConfigManager(config_path)
    ctx.ensure_object(dict)["manager"] = manager
    logger.debug(
        "[cli] Starting CLI invocation",
        extra={"config_path": str(manager.global_config_path), "command": ctx.invoked_subcommand},
    )
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ----------------------------------------------------------------------
# providers


@cli.group(name="providers", invoke_without_command=True, help="Manage saved provider profiles.")
@click.pass_context
def providers_group(ctx: click.Context) -> None:
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@providers_group.command(name="list")
@click.option("--app", "app_name", help="Only show providers for one tool (claude, codex, gemini).")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def list_providers(ctx: click.Context, app_name: Optional[str], json_output: bool) -> None:
    config = _manager(ctx).get_global_config()
    app_filter = _parse_app(app_name) if app_name else None

    rows = []
    for profile in config.providers.values():
        if app_filter and profile.app_type != app_filter:
            continue
        rows.append(
            {
                "id": profile.id,
                "name": profile.name,
                "app": profile.app_type.value,
                "base_url": bridge_for(profile.config.format).read_base_url(profile.config),
                "current": config.current.get(profile.app_type.value) == profile.id,
            }
        )

    if json_output:
        click.echo(json.dumps(rows, indent=2, ensure_ascii=False))
        return
    if not rows:
        click.echo("No providers configured.")
        return

    table = Table(title="Providers")
    table.add_column("", width=1)
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("App")
    table.add_column("Base URL", overflow="fold")
    for row in rows:
        table.add_row(
            "*" if row["current"] else "",
            escape(row["id"]),
            escape(row["name"]),
            row["app"],
            escape(row["base_url"] or "-"),
        )
    console.print(table)


@providers_group.command(name="show")
@click.argument("provider_id")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def show_provider(ctx: click.Context, provider_id: str, json_output: bool) -> None:
    with _endpoint_errors():
        profile = _manager(ctx).get_provider(provider_id)
    bridge = bridge_for(profile.config.format)
    fields = bridge.read_fields(profile.config)

    if json_output:
        payload = {
            "id": profile.id,
            "name": profile.name,
            "app": profile.app_type.value,
            "format": profile.config.format.value,
            "base_url": fields.base_url,
            "models": {slot.value: model for slot, model in fields.models.items()},
            "api_key_set": bool(fields.api_key),
            "settings": bridge.export_settings(profile.config),
            "custom_endpoints": [
                record.model_dump() for record in ConfigEndpointStore(_manager(ctx)).list(profile.id)
            ],
        }
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    console.print(f"\n[bold]{escape(profile.name or profile.id)}[/bold] ({profile.app_type.value})\n")
    console.print(f"Format: {profile.config.format.value}")
    console.print(f"Base URL: {escape(fields.base_url or 'Not set')}")
    console.print(f"API Key: {_mask(fields.api_key)}")
    for slot, model in fields.models.items():
        console.print(f"Model ({slot.value}): {escape(model)}")
    if profile.custom_endpoints:
        console.print("\n[bold]Custom endpoints:[/bold]")
        for record in ConfigEndpointStore(_manager(ctx)).list(profile.id):
            console.print(f"  {escape(record.url)}")


@providers_group.command(name="add")
@click.argument("provider_id")
@click.option("--app", "app_name", required=True, help="Tool this provider configures.")
@click.option("--name", default="", help="Display name.")
@click.option(
    "--settings-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Raw config blob (JSON for claude, TOML for codex, KEY=value for gemini).",
)
@click.option("--auth", "auth_text", help="Codex auth JSON object text.")
@click.option("--base-url", help="Base URL to write into the config.")
@click.option("--api-key", help="API key to write into the config.")
@click.option("--model", help="Main model name.")
@click.option("--candidate", "candidates", multiple=True, help="Preset endpoint candidate (repeatable).")
@click.option("--overwrite", is_flag=True, help="Replace an existing provider with the same id.")
@click.pass_context
def add_provider(
    ctx: click.Context,
    provider_id: str,
    app_name: str,
    name: str,
    settings_file: Optional[Path],
    auth_text: Optional[str],
    base_url: Optional[str],
    api_key: Optional[str],
    model: Optional[str],
    candidates: tuple[str, ...],
    overwrite: bool,
) -> None:
    clean_id = provider_id.strip()
    if not clean_id:
        raise click.ClickException("Provider id is required.")
    app_type = _parse_app(app_name)

    config_format = format_for_app(app_type)
    settings = settings_file.read_text(encoding="utf-8") if settings_file else ""
    if app_type == AppType.CODEX:
        settings = normalize_quotes(settings)
        error = validate_toml(settings) or validate_auth_json(auth_text)
        if error:
            raise click.ClickException(error)
        provider_config = ProviderConfig(format=config_format, settings=settings, auth=auth_text or "{}")
    elif settings:
        provider_config = ProviderConfig(format=config_format, settings=settings)
    else:
        provider_config = bridge_for(config_format).import_settings({"env": {}})

    with _endpoint_errors():
        # New providers have no saved endpoints yet, so the session starts empty.
        session = EditSession(app_type, provider_config, preset_candidates=candidates)
        if api_key:
            session.set_api_key(api_key)
        if base_url:
            session.set_base_url(validate(base_url))
        if model:
            session.set_model(ModelSlot.MAIN, model)

    profile = ProviderProfile(
        id=clean_id,
        name=name or clean_id,
        app_type=app_type,
        config=session.config,
        endpoint_candidates=[c.url for c in session.candidates if c.origin == EndpointOrigin.PRESET],
    )
    try:
        _manager(ctx).add_provider(profile, overwrite=overwrite)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"[green]Added provider '{escape(clean_id)}'.[/green]")


@providers_group.command(name="remove")
@click.argument("provider_id")
@click.pass_context
def remove_provider(ctx: click.Context, provider_id: str) -> None:
    with _endpoint_errors():
        _manager(ctx).delete_provider(provider_id)
    console.print(f"Removed provider '{escape(provider_id)}'.")


@providers_group.command(name="use")
@click.argument("provider_id")
@click.pass_context
def use_provider(ctx: click.Context, provider_id: str) -> None:
    manager = _manager(ctx)
    with _endpoint_errors():
        profile = manager.get_provider(provider_id)
        manager.set_current(profile.app_type, provider_id)
    console.print(f"Using '{escape(provider_id)}' for {profile.app_type.value}.")


# ----------------------------------------------------------------------
# endpoints


@cli.group(name="endpoints", invoke_without_command=True, help="Manage custom endpoints of a provider.")
@click.pass_context
def endpoints_group(ctx: click.Context) -> None:
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@endpoints_group.command(name="list")
@click.argument("provider_id")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def list_endpoints(ctx: click.Context, provider_id: str, json_output: bool) -> None:
    manager = _manager(ctx)
    with _endpoint_errors():
        session = _open_session(manager, provider_id)
    records = {record.url: record for record in ConfigEndpointStore(manager).list(provider_id)}

    rows = []
    for candidate in session.candidates:
        record = records.get(candidate.url)
        rows.append(
            {
                "url": candidate.url,
                "origin": candidate.origin.value,
                "selected": candidate.url == session.selected,
                "added_at": record.added_at if record else None,
                "last_used": record.last_used if record else None,
            }
        )

    if json_output:
        click.echo(json.dumps(rows, indent=2, ensure_ascii=False))
        return
    if not rows:
        click.echo("No endpoints configured.")
        return
    for row in rows:
        marker = "*" if row["selected"] else " "
        click.echo(f"{marker} {row['url']} [{row['origin']}]")


@endpoints_group.command(name="add")
@click.argument("provider_id")
@click.argument("url")
@click.pass_context
def add_endpoint(ctx: click.Context, provider_id: str, url: str) -> None:
    manager = _manager(ctx)
    with _endpoint_errors():
        session = _open_session(manager, provider_id)
        candidate = session.add_endpoint(url)
        _save_session(manager, provider_id, session)
    click.echo(f"Added endpoint {candidate.url}")


@endpoints_group.command(name="remove")
@click.argument("provider_id")
@click.argument("url")
@click.pass_context
def remove_endpoint(ctx: click.Context, provider_id: str, url: str) -> None:
    manager = _manager(ctx)
    with _endpoint_errors():
        session = _open_session(manager, provider_id)
        custom = set(session.draft_custom_urls())
        if validate(url) not in custom:
            raise click.ClickException(f"'{url}' is not a custom endpoint of '{provider_id}'.")
        session.remove_endpoint(url)
        _save_session(manager, provider_id, session)
    click.echo(f"Removed endpoint {validate(url)}")


# ----------------------------------------------------------------------
# speed test


@cli.command(name="speedtest")
@click.argument("provider_id")
@click.option("--timeout-ms", type=click.IntRange(min=1), help="Per-endpoint timeout in milliseconds.")
@click.option("--no-auto-select", is_flag=True, help="Do not switch to the fastest endpoint.")
@click.option("--no-warmup", is_flag=True, help="Skip the un-timed warm-up request.")
@click.option("--apply", "apply_result", is_flag=True, help="Save the selected endpoint to the provider.")
@click.option("--json", "json_output", is_flag=True, help="Output machine-readable JSON.")
@click.pass_context
def speedtest_cmd(
    ctx: click.Context,
    provider_id: str,
    timeout_ms: Optional[int],
    no_auto_select: bool,
    no_warmup: bool,
    apply_result: bool,
    json_output: bool,
) -> None:
    """Measure latency of every endpoint candidate of a provider."""
    manager = _manager(ctx)
    overrides: dict[str, Any] = {}
    with _endpoint_errors():
        profile = manager.get_provider(provider_id)
        if timeout_ms:
            overrides["probe_timeouts_ms"] = {profile.app_type.value: timeout_ms}
        if no_auto_select:
            overrides["auto_select"] = False
        if no_warmup:
            overrides["warmup"] = False
        session = _open_session(manager, provider_id, **overrides)
    previous = session.selected

    ranked = asyncio.run(session.run_speed_test())
    if session.last_error:
        raise click.ClickException(session.last_error)

    logger.info(
        "[cli] Speed test finished",
        extra={
            "provider": provider_id,
            "count": len(ranked),
            "selected": session.selected,
            "changed": session.selected != previous,
        },
    )

    if apply_result:
        with _endpoint_errors():
            _save_session(manager, provider_id, session)

    if json_output:
        payload = {
            "provider": provider_id,
            "timeout_ms": session.timeout_ms,
            "selected": session.selected or None,
            "previous": previous or None,
            "applied": apply_result,
            "results": [result.model_dump() for result in ranked],
        }
        click.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    table = Table(title=f"Endpoint latency ({session.timeout_ms} ms timeout)")
    table.add_column("#", justify="right")
    table.add_column("URL", overflow="fold")
    table.add_column("Latency", justify="right")
    table.add_column("Status")
    for index, result in enumerate(ranked, start=1):
        marker = " *" if result.url == session.selected else ""
        latency = f"{result.latency_ms} ms" if result.ok else "-"
        if result.ok:
            status = f"[green]{result.http_status}[/green]"
        else:
            status = f"[red]{escape(result.error or 'failed')}[/red]"
        table.add_row(str(index), escape(result.url) + marker, latency, status)
    console.print(table)

    if session.selected != previous:
        verb = "Switched to" if apply_result else "Fastest endpoint:"
        console.print(f"{verb} {escape(session.selected)}")
        if not apply_result:
            console.print("[dim]Run again with --apply to save it.[/dim]")


@cli.command(name="set-base-url")
@click.argument("provider_id")
@click.argument("url")
@click.pass_context
def set_base_url_cmd(ctx: click.Context, provider_id: str, url: str) -> None:
    """Write a base URL into a provider's config blob."""
    manager = _manager(ctx)
    with _endpoint_errors():
        session = _open_session(manager, provider_id)
        session.set_base_url(validate(url))
        _save_session(manager, provider_id, session)
    click.echo(f"Base URL set to {session.selected}")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except (RuntimeError, ValueError, OSError) as e:
        console.print(f"[red]Fatal error: {escape(str(e))}[/red]")
        logger.warning(
            "[cli] Fatal error in main CLI entrypoint: %s: %s",
            type(e).__name__,
            e,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
