# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the relay.

This module lets an operator inspect and drive the relay directly against its
database, without going through the HTTP API.

Usage:
    moperator serve --port 8000
    moperator retry stats
    moperator retry dead --json
    moperator retry replay 1718000000000-1a2b3c4d
    moperator health summary
    moperator health enable billing-bot --tenant acme
    moperator sign payload.json --key secret

Example:
    $ MOPERATOR_DB_PATH=/data/moperator.db moperator retry process
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from moperator.config_loader import RelayConfig, load_relay_config
from moperator.core import RelayCore
from moperator.signing import canonical_json, sign_payload, verify_payload

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _build_core(config: RelayConfig) -> RelayCore:
    return RelayCore(config, test_mode=True)


async def _with_core(config: RelayConfig, action):
    core = _build_core(config)
    await core.init()
    return await action(core)


@click.group()
@click.version_option(package_name="moperator-relay")
@click.option("--config", "config_path", envvar="MOPERATOR_CONFIG", default=None, help="INI configuration file.")
@click.option("--db", "db_path", default=None, help="SQLite database path (overrides config).")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str], verbose: bool) -> None:
    """Moperator relay - reliable webhook delivery of classified emails."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    config = load_relay_config(config_path)
    if db_path:
        config.db_path = db_path
    ctx.obj = config


@main.command("serve")
@click.option("--host", "-h", default="0.0.0.0", help="Host to bind to.")
@click.option("--port", "-p", type=int, default=8000, help="Port to listen on.")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, reload: bool) -> None:
    """Run the HTTP API and scheduler with uvicorn."""
    import uvicorn

    config: RelayConfig = ctx.obj
    # The server module loads its own settings from the environment.
    config_path = ctx.find_root().params.get("config_path")
    if config_path:
        os.environ["MOPERATOR_CONFIG"] = config_path
    os.environ["MOPERATOR_DB_PATH"] = config.db_path
    uvicorn.run("moperator.server:app", host=host, port=port, reload=reload)


# ============================================================================
# Retry queue
# ============================================================================

@main.group("retry")
def retry() -> None:
    """Inspect and drive the retry queue."""


@retry.command("stats")
@click.pass_obj
def retry_stats(config: RelayConfig) -> None:
    """Show pending and dead-lettered counts."""
    stats = run_async(_with_core(config, lambda core: core.retry_queue.stats()))
    console.print(f"Pending: [bold]{stats.pending}[/bold]  Dead lettered: [bold]{stats.dead_lettered}[/bold]")


def _items_table(title: str, items: list, dead: bool) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Agent")
    table.add_column("Label")
    table.add_column("Attempts", justify="right")
    table.add_column("Dead lettered" if dead else "Next attempt")
    table.add_column("Error", style="red")
    for item in items:
        when = item.dead_lettered_at if dead else item.next_attempt
        error = item.final_error if dead else item.last_error
        table.add_row(
            item.id,
            item.agent_id,
            item.matched_label,
            f"{item.attempts}/{item.max_attempts}",
            when.isoformat(),
            (error or "")[:60],
        )
    return table


@retry.command("pending")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def retry_pending(config: RelayConfig, as_json: bool) -> None:
    """List pending retry items."""
    items = run_async(_with_core(config, lambda core: core.retry_queue.list_pending()))
    if as_json:
        print_json([item.to_dict() for item in items])
        return
    if not items:
        console.print("[dim]No pending retries.[/dim]")
        return
    console.print(_items_table("Pending retries", items, dead=False))


@retry.command("dead")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def retry_dead(config: RelayConfig, as_json: bool) -> None:
    """List dead-lettered deliveries."""
    items = run_async(_with_core(config, lambda core: core.retry_queue.list_dead_letters()))
    if as_json:
        print_json([item.to_dict() for item in items])
        return
    if not items:
        console.print("[dim]No dead letters.[/dim]")
        return
    console.print(_items_table("Dead letters", items, dead=True))


@retry.command("process")
@click.pass_obj
def retry_process(config: RelayConfig) -> None:
    """Redeliver every due retry item once."""
    stats = run_async(_with_core(config, lambda core: core.retry_queue.process()))
    print_json(stats.to_dict())


@retry.command("replay")
@click.argument("item_id")
@click.pass_obj
def retry_replay(config: RelayConfig, item_id: str) -> None:
    """Queue a fresh delivery for a dead-lettered item."""
    item = run_async(_with_core(config, lambda core: core.retry_queue.replay_dead_letter(item_id)))
    if item is None:
        print_error(f"Dead letter '{item_id}' not found")
        sys.exit(1)
    print_success(f"Dead letter {item_id} replayed as {item.id}")


# ============================================================================
# Health
# ============================================================================

@main.group("health")
def health() -> None:
    """Agent health monitoring."""


@health.command("check")
@click.pass_obj
def health_check(config: RelayConfig) -> None:
    """Probe every active agent now."""
    stats = run_async(_with_core(config, lambda core: core.health.check_all_agents()))
    print_json(stats.to_dict())


@health.command("summary")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def health_summary(config: RelayConfig, as_json: bool) -> None:
    """Show every agent's health."""
    data = run_async(_with_core(config, lambda core: core.health.summary()))
    if as_json:
        print_json(data)
        return
    table = Table(title="Agents")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Active")
    table.add_column("Healthy")
    table.add_column("Failures", justify="right")
    table.add_column("Last error", style="red")
    for agent in data["agents"]:
        health_data = agent["health"] or {}
        healthy = health_data.get("healthy")
        table.add_row(
            agent["id"],
            agent["name"] or "-",
            "[green]yes[/green]" if agent["active"] else "[red]no[/red]",
            "-" if healthy is None else ("[green]yes[/green]" if healthy else "[red]no[/red]"),
            str(health_data.get("consecutiveFailures", 0)),
            (health_data.get("lastError") or "")[:60],
        )
    console.print(table)
    summary = data["summary"]
    console.print(
        f"Total: {summary['total']}  Active: {summary['active']}  "
        f"Healthy: {summary['healthy']}  Unhealthy: {summary['unhealthy']}"
    )


@health.command("enable")
@click.argument("agent_id")
@click.option("--tenant", "tenant_id", default=None, help="Tenant owning the agent.")
@click.pass_obj
def health_enable(config: RelayConfig, agent_id: str, tenant_id: Optional[str]) -> None:
    """Re-enable an auto-disabled agent."""
    agent = run_async(_with_core(config, lambda core: core.health.re_enable_agent(agent_id, tenant_id)))
    if agent is None:
        print_error(f"Agent '{agent_id}' not found")
        sys.exit(1)
    print_success(f"Agent {agent_id} re-enabled")


# ============================================================================
# Signatures
# ============================================================================

def _load_payload(path: str) -> dict[str, Any]:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        print_error(f"Cannot read payload {path}: {exc}")
        sys.exit(1)


@main.command("sign")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--key", envvar="MOPERATOR_SIGNING_KEY", required=True, help="Signing secret.")
def sign(payload_file: str, key: str) -> None:
    """Print the signature of a webhook payload file."""
    payload = _load_payload(payload_file)
    click.echo(sign_payload(canonical_json(payload), key))


@main.command("verify")
@click.argument("payload_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("signature")
@click.option("--key", envvar="MOPERATOR_SIGNING_KEY", required=True, help="Signing secret.")
def verify(payload_file: str, signature: str, key: str) -> None:
    """Check a webhook payload file against a signature."""
    payload = _load_payload(payload_file)
    if verify_payload(payload, signature, key):
        print_success("Signature valid")
        return
    print_error("Signature mismatch")
    sys.exit(1)


if __name__ == "__main__":
    main()
