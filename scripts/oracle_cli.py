#!/usr/bin/env python3
"""Command-line utilities for operating the API oracle agent."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from src.oracle.agent import OracleAgent
from src.oracle.errors import OracleError
from src.utils.config import Settings


def _run(work: Callable[[OracleAgent], Awaitable[Any]]) -> Any:
    async def _main() -> Any:
        agent = OracleAgent(Settings.from_env())
        try:
            return await work(agent)
        finally:
            await agent.close()

    try:
        return asyncio.run(_main())
    except OracleError as exc:
        raise click.ClickException(exc.message)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Manage the API oracle agent."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )


@cli.command()
def status() -> None:
    """Show every configured oracle with its schedule and last error."""

    async def _work(agent: OracleAgent) -> None:
        configs = agent.store.load()
        print(f"Contract: {agent.chain.contract_address}")
        print(f"Oracles: {len(configs)}")
        for oracle_id, config in configs.items():
            next_update = config.compute_next_update()
            line = f"  • {oracle_id}: every {config.update_interval_minutes}m, next {next_update.isoformat()}"
            if config.has_error:
                line += f" [error: {config.error_message}]"
            print(line)

    _run(_work)


@cli.command()
def due() -> None:
    """List deployed oracles that are due for an update."""

    async def _work(agent: OracleAgent) -> None:
        configs = await agent.get_oracles_due_for_update()
        if not configs:
            print("No oracles due")
        for config in configs:
            print(config.id)

    _run(_work)


@cli.command()
@click.argument("oracle_id")
def update(oracle_id: str) -> None:
    """Update one oracle now."""

    async def _work(agent: OracleAgent) -> None:
        result = await agent.update_oracle(oracle_id)
        if result.is_skipped:
            print(f"Skipped {oracle_id}: {result.skip_reason.value}")
        else:
            print(f"Updated {oracle_id}: {result.old_value} -> {result.new_value} in tx {result.tx_hash}")

    _run(_work)


@cli.command()
@click.argument("oracle_id")
def address(oracle_id: str) -> None:
    """Print the derived wallet address of an oracle."""

    async def _work(agent: OracleAgent) -> None:
        print(await agent.derive_wallet_address(oracle_id))

    _run(_work)


@cli.command()
@click.argument("oracle_id")
def balance(oracle_id: str) -> None:
    """Show the wallet balance of an oracle."""

    async def _work(agent: OracleAgent) -> None:
        info = await agent.get_wallet_info(oracle_id)
        funded = "ok" if info["balance"]["hasMinimum"] else "below minimum gas reserve"
        print(f"{info['address']}: {info['balance']['formatted']} ({funded})")

    _run(_work)


@cli.command()
@click.argument("oracle_id")
def value(oracle_id: str) -> None:
    """Read the on-chain value of an oracle."""

    async def _work(agent: OracleAgent) -> None:
        print(json.dumps(await agent.get_oracle_value(oracle_id), indent=2))

    _run(_work)


@cli.command()
@click.argument("url")
@click.argument("data_path", required=False)
def probe(url: str, data_path: Optional[str]) -> None:
    """Fetch URL and optionally extract DATA_PATH from the response."""

    async def _work(agent: OracleAgent) -> None:
        result = await agent.probe_data_source(url, data_path)
        if not result["success"]:
            raise click.ClickException(result["error"])
        if data_path:
            print(f"{data_path} = {result['value']}")
        else:
            print(json.dumps(result["data"], indent=2)[:2000])

    _run(_work)


@cli.command()
def migrate() -> None:
    """Rewrite legacy oracle configs into the current format."""
    async def _work(agent: OracleAgent) -> None:
        migrated = agent.migrate_configs()
        if migrated:
            print(f"Migrated {len(migrated)} oracle(s) in {agent.store.path}: {', '.join(migrated)}")
        else:
            print("Nothing to migrate")

    _run(_work)


@cli.command()
def run() -> None:
    """Run the scheduler in the foreground until interrupted."""

    async def _work(agent: OracleAgent) -> None:
        agent.migrate_configs()
        agent.start_scheduler()
        print("Scheduler running, press Ctrl+C to stop")
        await asyncio.Event().wait()

    try:
        _run(_work)
    except KeyboardInterrupt:
        print("Stopped")


if __name__ == "__main__":
    cli()
