#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Maintenance entrypoint for vibejournal.

Thin typer wrapper over ``JournalService``; every command opens the
configured journal, runs one operation and exits.
"""
from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Optional
import asyncio
import json

import typer

from vibejournal.analysis import AnalysisKind
from vibejournal.config import KeyStore, load_config
from vibejournal.crypto import VERIFIER_KEY
from vibejournal.errors import JournalError
from vibejournal.logging_config import configure_ops_log, enable_debug_mode
from vibejournal.logic import JournalService, open_journal

app = typer.Typer(
    name="vibejournal",
    help="vibejournal maintenance: storage stats, export/import, cleanup and analysis.",
    add_completion=False,
)

PasswordOption = Annotated[
    Optional[str],
    typer.Option("--password", "-p", help="Journal password (prompted when the journal is encrypted)."),
]


def _resolve_password(password: Optional[str], key_store: KeyStore) -> Optional[str]:
    if password is None and key_store.get(VERIFIER_KEY):
        password = typer.prompt("Password", hide_input=True)
    return password or None


def _run(password: Optional[str], op: Callable[[JournalService], Awaitable[Any]]) -> Any:
    """Open the journal, run *op*, and turn JournalError into exit code 1."""
    cfg = load_config()
    key_store = KeyStore()
    password = _resolve_password(password, key_store)

    async def _main() -> Any:
        service = await open_journal(cfg, password, key_store=key_store)
        try:
            return await op(service)
        finally:
            if service.analysis is not None:
                await service.analysis.aclose()

    try:
        return asyncio.run(_main())
    except JournalError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.callback()
def main_callback(
    debug: Annotated[bool, typer.Option("--debug", help="Log debug output to stderr.")] = False,
    ops_log: Annotated[
        Optional[Path],
        typer.Option("--ops-log", help="Directory for the rotating operations log."),
    ] = None,
) -> None:
    """vibejournal maintenance CLI."""
    if debug:
        enable_debug_mode()
    if ops_log is not None:
        configure_ops_log(ops_log)


@app.command("stats")
def stats_cmd(password: PasswordOption = None) -> None:
    """Show entry/session counts and approximate storage size."""
    stats = _run(password, lambda s: s.stats())
    typer.echo(f"Entries:      {stats.entry_count}")
    typer.echo(f"Sessions:     {stats.session_count}")
    typer.echo(f"Approx size:  {stats.approximate_bytes} bytes")
    typer.echo(f"Last backup:  {stats.last_backup or 'never'}")


@app.command("export")
def export_cmd(
    path: Annotated[Path, typer.Argument(help="Destination JSON file.")],
    password: PasswordOption = None,
) -> None:
    """Export entries, sessions and settings to a JSON bundle."""
    written = _run(password, lambda s: s.export_to_file(path))
    typer.echo(f"Exported journal to {written}")


@app.command("import")
def import_cmd(
    path: Annotated[Path, typer.Argument(help="JSON bundle produced by 'export'.", exists=True, dir_okay=False)],
    password: PasswordOption = None,
) -> None:
    """Import a JSON bundle, upserting records by id."""
    report = _run(password, lambda s: s.import_from_file(path))
    typer.echo(f"Imported {report.entries} entries, {report.sessions} sessions, {report.settings} settings")


@app.command("cleanup")
def cleanup_cmd(password: PasswordOption = None) -> None:
    """Remove duplicate entries and migrate legacy sessions."""
    report = _run(password, lambda s: s.cleanup_duplicates())
    typer.echo(f"Removed {report.removed} duplicate entries; migrated {report.migrated_sessions} sessions")


@app.command("analyze")
def analyze_cmd(
    kind: Annotated[AnalysisKind, typer.Argument(help="sentiment, patterns or trends.")],
    password: PasswordOption = None,
) -> None:
    """Run an analysis over every entry and print the result as JSON."""
    result = _run(password, lambda s: s.analyze(kind))
    payload = asdict(result)
    payload["kind"] = result.kind.value
    typer.echo(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
