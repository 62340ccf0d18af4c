import json
import logging
import signal
from pathlib import Path

import click

from .adapters import CachingConversionService, HttpConversionService, SqliteCache
from .config import parse_settings
from .db import DB_FILE, init_db, connect_db
from .models import Batch, Job, JobInput, JOB_STATUSES
from .repository import (
    SqliteSink, list_records, counts, failed_records, get_config, set_config
)
from .scheduler import Scheduler
from .utils import parse_duration_ms


@click.group(help="batchctl — batch conversion orchestrator")
@click.option("--db", "db_path", default=DB_FILE, show_default=True, help="SQLite database file")
@click.option("-v", "--verbose", is_flag=True, help="Log worker activity")
@click.pass_context
def cli(ctx, db_path, verbose):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_path
    # Ensure DB/schema exist before any command runs
    init_db(db_path)


def collect_files(paths):
    """Expand files and directories into (name, content) pairs, in argument order."""
    out = []
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            for f in sorted(x for x in p.rglob("*") if x.is_file()):
                out.append((f.relative_to(p).as_posix(), f.read_text(encoding="utf-8", errors="replace")))
        else:
            out.append((p.name, p.read_text(encoding="utf-8", errors="replace")))
    return out


class ProgressPrinter:
    def notify(self, event):
        if event.kind == "transition" and event.to_status in ("running", "succeeded", "failed", "cancelled"):
            color = {"succeeded": "green", "failed": "red", "cancelled": "yellow"}.get(event.to_status, "cyan")
            click.secho(f"[{event.to_status:>9}] {event.job_id} (attempt {event.attempt})", fg=color)
        elif event.kind == "attempt" and event.attempt > 1:
            click.secho(f"[    retry] {event.job_id} attempt {event.attempt}", fg="yellow")
        elif event.kind == "batch_finished":
            click.echo(f"Counts: {json.dumps(event.counts)}")


def run_batch(db_path, jobs, settings, batch_id=None, use_cache=True):
    # timeout_seconds None means no HTTP timeout either
    service = HttpConversionService(settings.endpoint, ai_model=settings.ai_model,
                                    timeout=settings.timeout_seconds)
    if use_cache:
        service = CachingConversionService(service, SqliteCache(db_path))

    scheduler = Scheduler(service, sink=SqliteSink(db_path), reporters=[ProgressPrinter()])
    batch = Batch(
        jobs=jobs,
        concurrency_limit=settings.concurrency_limit,
        max_attempts=settings.max_attempts,
        backoff_delay=settings.backoff_delay,
        timeout=settings.timeout_seconds,
        id=batch_id or "",
    )
    handle = scheduler.submit(batch)
    click.secho(f"Batch {handle.id}: {len(jobs)} file(s), {settings.concurrency_limit} at a time. "
                f"Press Ctrl+C to cancel…", fg="cyan")

    def _handler(signum, frame):
        click.secho(f"\nReceived signal {signum}. Cancelling queued files; running ones will finish.",
                    fg="yellow")
        handle.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        previous = None  # not the main thread
    try:
        summary = None
        while summary is None:
            summary = handle.wait(timeout=0.5)
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)
    return summary


def _settings_for(db_path, concurrency, max_attempts, backoff, timeout, endpoint, model):
    conn = connect_db(db_path)
    try:
        settings = parse_settings(get_config(conn))
    finally:
        conn.close()
    if concurrency is not None:
        settings.concurrency_limit = concurrency
    if max_attempts is not None:
        settings.max_attempts = max_attempts
    if backoff is not None:
        settings.backoff_ms = parse_duration_ms(backoff)
    if timeout is not None:
        settings.timeout_seconds = timeout or None
    if endpoint:
        settings.endpoint = endpoint
    if model:
        settings.ai_model = model
    return settings


def _print_summary(summary):
    click.echo(json.dumps(summary.to_dict(), indent=2))
    if summary.failed or summary.persistence_warnings:
        raise SystemExit(1)


# ---------- Convert ----------
@cli.command("convert", help="Convert files (directories are walked recursively) as one batch")
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--batch-id", default=None, help="Batch id (default: generated)")
@click.option("--concurrency", type=int, default=None, help="Files converted at the same time")
@click.option("--max-attempts", type=int, default=None, help="Attempts per file before it fails")
@click.option("--backoff", default=None, help="Pause between attempts, e.g. 2500, 2500ms, 2.5s")
@click.option("--timeout", type=int, default=None, help="Per-call timeout in seconds (0 = none)")
@click.option("--endpoint", default=None, help="Conversion service URL")
@click.option("--model", default=None, help="AI model passed to the service")
@click.option("--prompt", default=None, help="Prompt template; {code} is replaced by the file content")
@click.option("--no-cache", is_flag=True, help="Skip the conversion cache")
@click.pass_context
def convert_cmd(ctx, paths, batch_id, concurrency, max_attempts, backoff, timeout, endpoint, model, prompt, no_cache):
    db_path = ctx.obj["db"]
    try:
        settings = _settings_for(db_path, concurrency, max_attempts, backoff, timeout, endpoint, model)
        options = {"ai_model": settings.ai_model}
        if prompt:
            options["prompt"] = prompt
        jobs = [Job(id=name, input=JobInput(name=name, content=content, options=options))
                for name, content in collect_files(paths)]
        summary = run_batch(db_path, jobs, settings, batch_id=batch_id, use_cache=not no_cache)
    except (ValueError, RuntimeError, click.ClickException) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    _print_summary(summary)


@cli.command("retry-failed", help="Re-run the failed files of a batch")
@click.argument("batch_id")
@click.option("--concurrency", type=int, default=None)
@click.option("--max-attempts", type=int, default=None)
@click.option("--backoff", default=None)
@click.option("--no-cache", is_flag=True)
@click.pass_context
def retry_failed_cmd(ctx, batch_id, concurrency, max_attempts, backoff, no_cache):
    db_path = ctx.obj["db"]
    conn = connect_db(db_path)
    try:
        rows = failed_records(conn, batch_id)
    finally:
        conn.close()

    if not rows:
        click.echo(f"No failed files in batch {batch_id}.")
        return

    try:
        settings = _settings_for(db_path, concurrency, max_attempts, backoff, None, None, None)
        jobs = [
            Job(id=r["job_id"], input=JobInput(name=r["file_name"], content=r["original_content"] or "",
                                               options={"ai_model": settings.ai_model}))
            for r in rows
        ]
        summary = run_batch(db_path, jobs, settings, batch_id=batch_id, use_cache=not no_cache)
    except (ValueError, RuntimeError) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    _print_summary(summary)


# ---------- Records ----------
@cli.command("list")
@click.option("--batch-id", default=None)
@click.option("--status", type=click.Choice(list(JOB_STATUSES)), default=None)
@click.pass_context
def list_cmd(ctx, batch_id, status):
    conn = connect_db(ctx.obj["db"])
    try:
        rows = list_records(conn, batch_id=batch_id, status=status)
    finally:
        conn.close()

    if not rows:
        click.echo("No records.")
        return

    for r in rows:
        click.echo(
            f"{r['batch_id'][:12]:>12} | {r['file_name']:<30} | {r['status']:<9} | attempts={r['attempts']} "
            f"| finished={r['finished_at']} | error={r['error_kind'] or ''} {r['error_message'] or ''}".rstrip()
        )


@cli.command("status")
@click.option("--batch-id", default=None)
@click.pass_context
def status_cmd(ctx, batch_id):
    conn = connect_db(ctx.obj["db"])
    try:
        click.echo(json.dumps(counts(conn, batch_id=batch_id), indent=2))
    finally:
        conn.close()


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = connect_db(ctx.obj["db"])
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = connect_db(ctx.obj["db"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


def main():
    cli(obj={})
