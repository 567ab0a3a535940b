"""PriceWager CLI entrypoint.

Commands:
  config verify | config generate-manifest | config show
  db migrate | db status | db restore
  wal show | wal replay
  oracle snapshot
  simulate
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

# ─── Logging setup ────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger("pricewager")


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync Click context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


# ─── Root CLI ─────────────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="1.0.0", prog_name="pricewager")
def cli() -> None:
    """PriceWager: two-party escrow and settlement for price-direction wagers."""
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# CONFIG commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def config() -> None:
    """Engine config signing and inspection."""
    pass


@config.command("generate-manifest")
@click.option(
    "--config-dir", default="config", help="Directory holding engine.json and assets.json",
    type=click.Path(exists=True, file_okay=False),
)
@click.option("--key", required=True, envvar="PRICEWAGER_OPERATOR_KEY", help="Operator HMAC key")
def config_generate_manifest(config_dir: str, key: str) -> None:
    """Sign engine.json and assets.json."""
    from pricewager.config_signing import ConfigTamperError, generate_manifest

    try:
        manifest = generate_manifest(Path(config_dir), key)
    except ConfigTamperError as e:
        click.echo("Cannot sign config: {}".format(e), err=True)
        sys.exit(1)
    click.echo("Manifest generated with {} file hashes.".format(len(manifest["file_hashes"])))
    click.echo("Signature: {}...".format(manifest["signature"][:32]))


@config.command("verify")
@click.option(
    "--config-dir", default="config", help="Directory holding engine.json and assets.json",
    type=click.Path(exists=True, file_okay=False),
)
@click.option("--key", required=True, envvar="PRICEWAGER_OPERATOR_KEY", help="Operator HMAC key")
def config_verify(config_dir: str, key: str) -> None:
    """Verify the signed config manifest (fail-closed)."""
    from pricewager.config_signing import ConfigTamperError, verify_manifest

    try:
        verify_manifest(Path(config_dir), key)
        click.echo("✓ Config manifest verified OK")
    except ConfigTamperError as e:
        click.echo("✗ CONFIG_TAMPER: {}".format(e), err=True)
        sys.exit(1)


@config.command("show")
@click.option(
    "--config-dir", default=None, help="Signed config directory (default: environment only)",
    type=click.Path(exists=True, file_okay=False),
)
@click.option("--key", default=None, envvar="PRICEWAGER_OPERATOR_KEY", help="Operator HMAC key")
def config_show(config_dir: Optional[str], key: Optional[str]) -> None:
    """Print the effective engine config and registry."""
    from pricewager.config import ConfigError, EngineConfig
    from pricewager.config_signing import ConfigTamperError, load_verified_config
    from pricewager.registry import compute_registry_hash, load_registry

    try:
        if config_dir is None:
            _echo_json({"engine": EngineConfig.from_env().to_dict()})
            return
        if not key:
            click.echo("--key is required with --config-dir", err=True)
            sys.exit(1)
        engine_cfg, assets = load_verified_config(Path(config_dir), key)
        reg = load_registry(assets)
    except (ConfigError, ConfigTamperError) as e:
        click.echo("✗ Config error: {}".format(e), err=True)
        sys.exit(1)

    _echo_json({
        "engine": engine_cfg.to_dict(),
        "registry": reg.to_dict(),
        "registry_hash": compute_registry_hash(reg),
    })


# ═══════════════════════════════════════════════════════════════════════════════
# DB commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def db() -> None:
    """Database operations."""
    pass


@db.command("migrate")
@click.option(
    "--migrations-dir", default=None,
    help="Path to migrations directory (default: auto-detect)",
)
def db_migrate(migrations_dir: Optional[str]) -> None:
    """Run pending database migrations."""
    from pricewager.db import close_pool, get_pool, run_migrations

    mdir = Path(migrations_dir) if migrations_dir else None

    async def _run_migrate() -> List[str]:
        try:
            pool = await get_pool()
            return await run_migrations(pool, mdir)
        finally:
            await close_pool()

    applied = _run(_run_migrate())
    if applied:
        click.echo("Applied {} migration(s): {}".format(len(applied), ", ".join(applied)))
    else:
        click.echo("All migrations already applied.")


@db.command("status")
@click.option("--migrations-dir", default=None, help="Path to migrations directory")
def db_status(migrations_dir: Optional[str]) -> None:
    """List applied and pending migrations."""
    from pricewager.db import close_pool, get_pool, migration_status

    mdir = Path(migrations_dir) if migrations_dir else None

    async def _run_status() -> Dict[str, List[str]]:
        try:
            pool = await get_pool()
            return await migration_status(pool, mdir)
        finally:
            await close_pool()

    status = _run(_run_status())
    click.echo("Applied: {}".format(", ".join(status["applied"]) or "-"))
    click.echo("Pending: {}".format(", ".join(status["pending"]) or "-"))


@db.command("restore")
@click.option("--owner", required=True, help="Engine owner identity")
@click.option(
    "--config-dir", default="config", help="Directory holding engine.json and assets.json",
    type=click.Path(exists=True, file_okay=False),
)
@click.option("--key", required=True, envvar="PRICEWAGER_OPERATOR_KEY", help="Operator HMAC key")
def db_restore(owner: str, config_dir: str, key: str) -> None:
    """Reload persisted wagers into an engine built from signed config."""
    from pricewager.config_signing import ConfigTamperError, load_verified_config
    from pricewager.db import close_pool, get_pool
    from pricewager.engine import WagerEngine
    from pricewager.store import restore_engine

    try:
        engine_cfg, assets = load_verified_config(Path(config_dir), key)
    except ConfigTamperError as e:
        click.echo("✗ CONFIG_TAMPER: {}".format(e), err=True)
        sys.exit(1)

    engine = WagerEngine(owner, config=engine_cfg)
    engine.load_assets(owner, assets)

    async def _run_restore() -> Dict[str, Any]:
        try:
            pool = await get_pool()
            return await restore_engine(pool, engine)
        finally:
            await close_pool()

    restored = _run(_run_restore())
    click.echo("Restored {} wager(s) and {} refund flag(s)".format(
        restored["wagers"], restored["refund_flags"],
    ))
    _echo_json(engine.summary())


# ═══════════════════════════════════════════════════════════════════════════════
# WAL commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def wal() -> None:
    """Engine event log operations."""
    pass


@wal.command("show")
@click.option("--wal-path", default="data/wal.jsonl", help="Path to WAL file")
@click.option("--wager-id", default=None, type=int, help="Only records for this wager")
def wal_show(wal_path: str, wager_id: Optional[int]) -> None:
    """Print WAL records and wagers still in escrow."""
    from pricewager.wal import WALReader, WALSyncError, open_wager_ids

    reader = WALReader(wal_path)
    try:
        records = reader.read_all()
        shown = records if wager_id is None else reader.history(wager_id)
    except WALSyncError as e:
        click.echo("WAL read failed: {}".format(e), err=True)
        sys.exit(1)

    for rec in shown:
        click.echo("#{:<5} t={}  {:<22} wager={}".format(
            rec["seq"], rec["engine_ts"], rec["event_type"],
            "-" if rec["wager_id"] is None else rec["wager_id"],
        ))

    open_ids = open_wager_ids(records)
    click.echo("{} record(s); {} wager(s) in escrow{}".format(
        len(records), len(open_ids),
        ": {}".format(", ".join(str(i) for i in open_ids)) if open_ids else "",
    ))


@wal.command("replay")
@click.option("--wal-path", default="data/wal.jsonl", help="Path to WAL file")
def wal_replay(wal_path: str) -> None:
    """Replay WAL records into the event_log table."""
    from pricewager.db import close_pool, get_pool
    from pricewager.wal import WALSyncError, replay_wal

    async def _run_replay() -> Dict[str, int]:
        try:
            pool = await get_pool()
            return await replay_wal(wal_path, pool)
        finally:
            await close_pool()

    try:
        stats = _run(_run_replay())
        click.echo(
            "WAL replay complete: inserted={} skipped={} open_wagers={}".format(
                stats["inserted"], stats["skipped"], stats["open_wagers"],
            )
        )
    except WALSyncError as e:
        click.echo("WAL replay failed: {}".format(e), err=True)
        sys.exit(1)


# ═══════════════════════════════════════════════════════════════════════════════
# ORACLE commands
# ═══════════════════════════════════════════════════════════════════════════════

@cli.group()
def oracle() -> None:
    """Price feed operations."""
    pass


@oracle.command("snapshot")
@click.option("--base-url", required=True, help="Price feed service base URL")
@click.option("--feed", required=True, help="Oracle reference, e.g. eth-usd")
@click.option("--at", "at_ts", required=True, type=int, help="Unix timestamp to pin")
@click.option("--asset", default=None, help="Asset identity to label the snapshot with")
@click.option("--max-staleness", default=None, type=int, help="Override staleness window (seconds)")
def oracle_snapshot(
    base_url: str,
    feed: str,
    at_ts: int,
    asset: Optional[str],
    max_staleness: Optional[int],
) -> None:
    """Fetch a feed and print the price pinned at a timestamp."""
    import aiohttp

    from pricewager.config import EngineConfig
    from pricewager.errors import OracleUnavailable
    from pricewager.oracle import RoundBook, sync_feed
    from pricewager.snapshots import PriceSnapshotAdapter

    book = RoundBook()
    try:
        loaded = _run(sync_feed(book, base_url, feed))
    except aiohttp.ClientError as e:
        click.echo("Feed fetch failed: {}".format(e), err=True)
        sys.exit(1)

    staleness = max_staleness or EngineConfig.from_env().oracle_max_staleness_sec
    adapter = PriceSnapshotAdapter(book, max_staleness_sec=staleness)
    try:
        snap = adapter.snapshot_at(asset or feed, at_ts, feed)
    except OracleUnavailable as e:
        click.echo("✗ ORACLE_UNAVAILABLE: {}".format(e), err=True)
        sys.exit(1)

    click.echo("Loaded {} round(s) for {}".format(loaded, feed))
    _echo_json(snap.to_dict())


# ═══════════════════════════════════════════════════════════════════════════════
# SIMULATE
# ═══════════════════════════════════════════════════════════════════════════════

@cli.command("simulate")
@click.argument("scenario_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--wal-path", default=None, help="Also journal engine events to this WAL")
@click.option("--persist", is_flag=True, help="Save resulting wagers and flags to Postgres")
def simulate(scenario_path: str, wal_path: Optional[str], persist: bool) -> None:
    """Run a JSON scenario against an in-memory engine."""
    from pricewager.observability import EventLog
    from pricewager.scenario import ScenarioError, ScenarioRunner, load_scenario
    from pricewager.wal import WALSyncError, WALWriter

    writer = WALWriter(wal_path) if wal_path else None
    try:
        if writer is not None:
            writer.open()
        runner = ScenarioRunner(load_scenario(Path(scenario_path)), events=EventLog(writer))
        results = runner.run()
    except (ScenarioError, WALSyncError) as e:
        click.echo("✗ Scenario failed: {}".format(e), err=True)
        sys.exit(1)
    finally:
        if writer is not None:
            writer.close()

    for r in results:
        outcome = r.get("error") or r.get("result")
        if isinstance(outcome, dict):
            outcome = outcome.get("outcome") or outcome.get("status") or "ok"
        click.echo("[{:>3}] {:<20} {}".format(r["step"], r["op"], outcome))
    _echo_json(runner.engine.summary())

    if persist:
        from pricewager.db import close_pool, get_pool
        from pricewager.store import save_engine

        async def _run_persist() -> Dict[str, int]:
            try:
                pool = await get_pool()
                return await save_engine(pool, runner.engine)
            finally:
                await close_pool()

        saved = _run(_run_persist())
        click.echo("Persisted {} wager(s) and {} refund flag(s)".format(
            saved["wagers"], saved["refund_flags"],
        ))


if __name__ == "__main__":
    cli()
