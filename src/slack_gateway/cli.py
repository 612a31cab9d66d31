"""CLI entry point for the gateway.

Usage:
    slack-gateway serve [OPTIONS]              # run the HTTP server
    slack-gateway config                       # show resolved settings
    slack-gateway init [--force]               # write a default gateway.yaml
    slack-gateway tenants count                # tenants in the store
    slack-gateway tenants show TENANT_ID       # one tenant (secrets masked)
    slack-gateway tenants apply TENANT_ID FILE # push config from a JSON file
    python -m slack_gateway [COMMAND]          # via module
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click
import yaml


@click.group("slack-gateway")
def main() -> None:
    """Multi-tenant Slack webhook gateway."""


def _settings() -> Any:
    from slack_gateway.config import load_settings

    try:
        return load_settings()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.option("--host", default=None, help="Bind host (default from gateway.yaml)")
@click.option("--port", default=None, type=int, help="Bind port")
@click.option(
    "--env-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Load KEY=value pairs before reading settings",
)
@click.option("--log-level", default=None, help="Logging level (INFO, DEBUG, ...)")
def serve(
    host: str | None, port: int | None, env_file: Path | None, log_level: str | None
) -> None:
    """Run the gateway in the foreground."""
    import uvicorn

    from slack_gateway.app import create_server
    from slack_gateway.services import init_services
    from slack_gateway.startup import load_env_file, log_startup_info, setup_logging

    loaded_env = load_env_file(env_file) if env_file else []
    settings = _settings()
    host = host or settings.server.host
    port = port or settings.server.port
    level = (log_level or settings.server.log_level).upper()

    setup_logging(level=level)
    logger = logging.getLogger("slack_gateway")
    if loaded_env:
        logger.info("Loaded %d var(s) from %s", len(loaded_env), env_file)

    services = init_services(settings)
    server = create_server()
    log_startup_info(
        host=host, port=port, tiers=services.tenant_store.tier_names, log=logger
    )

    click.echo(f"Starting Slack Gateway on {host}:{port}")
    click.echo(f"  Webhook URL: http://{host}:{port}/events/<tenant_id>")
    click.echo(f"  Tiers: {' -> '.join(services.tenant_store.tier_names)}")
    uvicorn.run(server.app, host=host, port=port, log_level=level.lower())


@main.command("config")
def show_config() -> None:
    """Print the resolved settings with secrets masked."""
    from slack_gateway.config import config_path

    settings = _settings()
    data = settings.model_dump()
    for section, key in (
        ("server", "api_key"),
        ("store", "database_url"),
        ("store", "redis_url"),
    ):
        if data[section][key]:
            data[section][key] = "***"
    click.echo(f"# {config_path()}")
    click.echo(yaml.dump(data, default_flow_style=False, sort_keys=False))


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing gateway.yaml")
def init_config(force: bool) -> None:
    """Write a gateway.yaml with default settings."""
    from slack_gateway.config import config_path, save_settings
    from slack_gateway.schema import GatewaySettings

    path = config_path()
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force)")
    save_settings(GatewaySettings())
    click.echo(f"Wrote {path}")


@main.group()
def tenants() -> None:
    """Inspect and configure tenants directly against the store."""


def _run_with_services(coro_fn: Any) -> Any:
    from slack_gateway.services import init_services, stop_services

    async def _run() -> Any:
        services = init_services(_settings())
        await services.tenant_store.initialize()
        try:
            return await coro_fn(services)
        finally:
            await stop_services()

    return asyncio.run(_run())


@tenants.command("count")
def tenants_count() -> None:
    async def _count(services: Any) -> int:
        return await services.tenant_store.count()

    click.echo(_run_with_services(_count))


@tenants.command("show")
@click.argument("tenant_id")
def tenants_show(tenant_id: str) -> None:
    async def _show(services: Any) -> Any:
        return await services.tenant_store.locate(tenant_id)

    config, tier = _run_with_services(_show)
    if config is None:
        raise click.ClickException(f"Unknown tenant: {tenant_id}")
    click.echo(f"# tier: {tier}")
    click.echo(json.dumps(config.redacted(), indent=2))


@tenants.command("apply")
@click.argument("tenant_id")
@click.argument(
    "config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
def tenants_apply(tenant_id: str, config_file: Path) -> None:
    """Merge the fields in CONFIG_FILE (JSON) into TENANT_ID's config."""
    from slack_gateway.models import TenantConfigError

    try:
        update = json.loads(config_file.read_text())
    except ValueError as exc:
        raise click.ClickException(f"{config_file} is not valid JSON: {exc}") from exc

    async def _apply(services: Any) -> Any:
        return await services.registry.apply(tenant_id, update)

    try:
        config = _run_with_services(_apply)
    except TenantConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(config.redacted(), indent=2))


@main.command("version")
def version() -> None:
    from slack_gateway.startup import package_version

    click.echo(f"slack-gateway {package_version()}")
