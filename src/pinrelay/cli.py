"""CLI entry point for pinrelay."""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from pinrelay.client import PinRelayClient
from pinrelay.config import load_config
from pinrelay.errors import ConfigError, PinRelayError
from pinrelay.models.config import RelayConfig
from pinrelay.storage.sqlite import SQLiteStateStore


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _run(coro) -> None:
    """Run a command coroutine, turning relay errors into a clean exit."""
    try:
        asyncio.run(coro)
    except PinRelayError as exc:
        _fail(str(exc))


async def _finish(client: PinRelayClient, wait: bool) -> None:
    if wait:
        await client.coordinator.drain()
        failures = client.coordinator.terminal_failures
        for f in failures:
            click.echo(f"  FAILED {f.backend}: {f.error}", err=True)
    await client.close()


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Path to config TOML file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """pinrelay - Upload to IPFS and replicate pins to every configured backend."""
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config_path)
    except ConfigError as exc:
        _fail(str(exc))
    ctx.obj["cfg"] = cfg

    level = logging.DEBUG if verbose else getattr(logging, cfg.log_level.upper())
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Content ────────────────────────────────────────────


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--wait/--no-wait", default=True, help="Wait for backend replication to finish")
@click.pass_context
def add(ctx: click.Context, path: str, wait: bool) -> None:
    """Upload FILE to the primary node and replicate it."""
    cfg: RelayConfig = ctx.obj["cfg"]

    async def _add():
        client = PinRelayClient.from_config(cfg)
        await client.start()
        try:
            with open(path, "rb") as f:
                cid = await client.add(f)
            click.echo(cid.hash)
        except BaseException:
            await client.close()
            raise
        await _finish(client, wait)

    _run(_add())


@cli.command()
@click.argument("cid")
@click.option("--wait/--no-wait", default=True, help="Wait for backend replication to finish")
@click.option("--retry-failed", is_flag=True, help="Try again on backends that gave up on this CID")
@click.pass_context
def pin(ctx: click.Context, cid: str, wait: bool, retry_failed: bool) -> None:
    """Pin an existing CID on the primary node and every backend."""
    cfg: RelayConfig = ctx.obj["cfg"]

    async def _pin():
        client = PinRelayClient.from_config(cfg)
        await client.start()
        try:
            await client.pin(cid, retry_failed=retry_failed)
            click.echo(f"Pinned {cid}")
        except BaseException:
            await client.close()
            raise
        await _finish(client, wait)

    try:
        _run(_pin())
    except ValueError as exc:
        _fail(str(exc))


@cli.command()
@click.argument("cid")
@click.option("-o", "--output", type=click.Path(dir_okay=False, writable=True), default=None,
              help="Write content to a file instead of stdout")
@click.pass_context
def get(ctx: click.Context, cid: str, output: str | None) -> None:
    """Read CID from the primary node."""
    cfg: RelayConfig = ctx.obj["cfg"]

    async def _get():
        client = PinRelayClient.from_config(cfg)
        try:
            reader = await client.get(cid)
            try:
                if output:
                    with open(output, "wb") as f:
                        async for chunk in reader:
                            f.write(chunk)
                else:
                    out = click.get_binary_stream("stdout")
                    async for chunk in reader:
                        out.write(chunk)
                    out.flush()
            finally:
                await reader.aclose()
        finally:
            await client.primary.close()

    _run(_get())


@cli.command(name="ls")
@click.pass_context
def list_pinned(ctx: click.Context) -> None:
    """List CIDs pinned on the primary node."""
    cfg: RelayConfig = ctx.obj["cfg"]

    async def _ls():
        client = PinRelayClient.from_config(cfg)
        try:
            for cid in await client.list_pinned():
                click.echo(cid.hash)
        finally:
            await client.primary.close()

    _run(_ls())


# ── Replication ────────────────────────────────────────


@cli.command()
@click.option("--timeout", type=float, default=None, help="Give up waiting after this many seconds")
@click.pass_context
def replicate(ctx: click.Context, timeout: float | None) -> None:
    """Resume pending replication jobs and wait for them to finish."""
    cfg: RelayConfig = ctx.obj["cfg"]

    async def _replicate():
        client = PinRelayClient.from_config(cfg)
        await client.start()
        queued = len(client.coordinator.queue)
        click.echo(f"Resumed {queued} pending request(s)")
        if timeout is None:
            await client.coordinator.drain()
        await client.close(drain_timeout=timeout)
        stats = client.coordinator.stats()
        click.echo(f"Pinned: {stats.pinned}  Retried: {stats.retried}  Failed: {stats.failed}")

    _run(_replicate())


@cli.command()
@click.option("--status", "status_filter", type=click.Choice(["pending", "done", "failed"]),
              default=None, help="Only show jobs with this status")
@click.pass_context
def jobs(ctx: click.Context, status_filter: str | None) -> None:
    """Show persisted replication jobs."""
    cfg: RelayConfig = ctx.obj["cfg"]

    async def _jobs():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            rows = await store.get_jobs(status_filter)
        finally:
            await store.close()
        if not rows:
            click.echo("No jobs.")
            return
        for job in rows:
            line = f"{job.status:<8} {job.backend:<16} {job.cid}  attempts={job.attempts}"
            if job.last_error:
                line += f"  ({job.last_error})"
            click.echo(line)

    _run(_jobs())


@cli.command()
@click.pass_context
def failures(ctx: click.Context) -> None:
    """Show (CID, backend) pairs that exhausted their retries."""
    cfg: RelayConfig = ctx.obj["cfg"]

    async def _failures():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            rows = await store.get_failures()
        finally:
            await store.close()
        if not rows:
            click.echo("No terminal failures.")
            return
        for f in rows:
            click.echo(f"{f.failed_at}  {f.backend:<16} {f.cid}  attempts={f.attempts}  {f.error}")

    _run(_failures())


@cli.command()
@click.option("--limit", type=int, default=20, help="Number of entries to show")
@click.pass_context
def activity(ctx: click.Context, limit: int) -> None:
    """Show the most recent activity log entries."""
    cfg: RelayConfig = ctx.obj["cfg"]

    async def _activity():
        store = SQLiteStateStore(cfg.db_path)
        await store.initialize()
        try:
            rows = await store.get_recent_activity(limit)
        finally:
            await store.close()
        for entry in rows:
            target = " ".join(x for x in (entry.cid, entry.backend) if x)
            click.echo(f"{entry.created_at}  {entry.event_type:<20} {target}  {entry.message}")

    _run(_activity())


# ── Info ───────────────────────────────────────────────


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show relay configuration."""
    cfg: RelayConfig = ctx.obj["cfg"]
    click.echo(f"Kubo RPC:   {cfg.kubo_rpc_url}")
    click.echo(f"CID ver:    {cfg.cid_version}")
    click.echo(f"Workers:    {cfg.workers}")
    click.echo(f"Timeout:    {cfg.pin_timeout}s per pin")
    click.echo(f"Retries:    {cfg.retry.max_attempts} (max delay {cfg.retry.max_delay:g}s)")
    click.echo(f"Buffer:     {cfg.buffer.ceiling} bytes"
               f"{' (spills to disk)' if cfg.buffer.spill_to_disk else ''}")
    click.echo(f"DB path:    {cfg.db_path}")
    click.echo(f"Backends:   {len(cfg.backends) or '(none)'}")
    for b in cfg.backends:
        token = "***configured***" if b.token else "(no token)"
        click.echo(f"  {b.name:<16} {b.type.value:<16} {b.url}  {token}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
