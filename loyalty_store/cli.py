# ==============================================
# CLI — Command Line Entry Point
# ==============================================
#
# PURPOSE:
#   Operator commands for the hybrid store. Migration is triggered
#   from here, never by request traffic.
#
# COMMANDS:
# ---------
# 1. Create the MySQL database and tables:
#    loyalty-store init-schema --create-db
#
# 2. Replay MongoDB into MySQL (creates tables first):
#    loyalty-store migrate
#    loyalty-store migrate --collection offers
#
# 3. Show relational tables and document-store mode:
#    loyalty-store status
#
# 4. Row counts per MySQL table / documents per collection:
#    loyalty-store counts
#    loyalty-store inspect
#
# 5. Drop every table (for testing):
#    loyalty-store drop-tables --confirm
#
# ==============================================

import json
import signal
import threading
from typing import Optional

import typer

from loyalty_store.config import get_config
from loyalty_store.errors import LoyaltyStoreError
from loyalty_store.log import configure_logging, get_logger
from loyalty_store.storage.hybrid_storage import HybridStorage

app = typer.Typer(
    name="loyalty-store",
    help="Hybrid MongoDB + MySQL storage for the loyalty platform",
    no_args_is_help=True,
)

logger = get_logger(__name__)


def build_storage() -> HybridStorage:
    """Build the mediator from environment configuration."""
    config = get_config()
    configure_logging(config.logging)
    return HybridStorage.from_config(config)


@app.command("init-schema")
def init_schema(
    create_db: bool = typer.Option(False, "--create-db", help="CREATE DATABASE IF NOT EXISTS first"),
):
    """Create the relational tables for every collection."""
    with build_storage() as storage:
        try:
            if create_db:
                storage.relational_store.create_database()
            tables = storage.relational_store.initialize_tables()
        except LoyaltyStoreError as exc:
            typer.echo(f"Schema initialization failed: {exc}", err=True)
            raise typer.Exit(1)
    typer.echo(f"Tables ready: {len(tables)}")


@app.command("migrate")
def migrate(
    collection: Optional[str] = typer.Option(None, help="Migrate a single collection"),
    skip_init: bool = typer.Option(False, "--skip-init", help="Do not create tables first"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Replay the document store into the relational store."""
    cancel = threading.Event()
    previous = _install_cancel_handler(cancel)
    try:
        with build_storage() as storage:
            try:
                if not skip_init:
                    storage.relational_store.initialize_tables()
                if collection:
                    result = storage.migrate_collection(collection, cancel)
                else:
                    result = storage.migrate_all(cancel)
            except LoyaltyStoreError as exc:
                typer.echo(f"Migration failed: {exc}", err=True)
                raise typer.Exit(1)
    finally:
        _restore_cancel_handler(previous)

    if as_json:
        typer.echo(json.dumps(result.as_dict(), indent=2))
    else:
        typer.echo(f"Documents migrated: {result.migrated}")
        for name, count in result.per_collection.items():
            typer.echo(f"  {name:<22} {count}")
        if result.skipped:
            typer.echo(f"Skipped (no id): {result.skipped}")
        for failure in result.failures:
            typer.echo(f"  [failed] {failure.collection}/{failure.identifier}: {failure}")
        if result.cancelled:
            typer.echo("Migration cancelled before completion")
    if result.failures or result.cancelled:
        raise typer.Exit(2)


@app.command("status")
def status():
    """List relational tables and the document-store mode."""
    with build_storage() as storage:
        try:
            tables = storage.relational_store.list_tables()
        except LoyaltyStoreError as exc:
            typer.echo(f"Could not list tables: {exc}", err=True)
            raise typer.Exit(1)
        summary = storage.status()
    typer.echo(f"Document store: {summary['document_store_mode']}")
    typer.echo(f"Relational tables ({len(tables)}): {', '.join(tables)}")


@app.command("counts")
def counts():
    """Row count per relational table."""
    with build_storage() as storage:
        table_counts = storage.relational_store.table_counts()
    for table, count in table_counts.items():
        typer.echo(f"  {table:<22} {count}")


@app.command("inspect")
def inspect():
    """Document count per collection in the document store."""
    with build_storage() as storage:
        try:
            stats = storage.document_store.get_data_stats()
        except LoyaltyStoreError as exc:
            typer.echo(f"Could not inspect document store: {exc}", err=True)
            raise typer.Exit(1)
        mode = storage.status()["document_store_mode"]
    typer.echo(f"Document store: {mode}")
    for name, count in stats.items():
        typer.echo(f"  {name:<22} {count}")


@app.command("drop-tables")
def drop_tables(
    confirm: bool = typer.Option(False, "--confirm", help="Required: really drop every table"),
):
    """Drop every relational table."""
    if not confirm:
        typer.echo("Refusing to drop tables without --confirm")
        raise typer.Exit(1)
    with build_storage() as storage:
        dropped = storage.relational_store.drop_tables()
    typer.echo(f"Dropped {len(dropped)} tables")


def _install_cancel_handler(cancel: threading.Event):
    # Ctrl+C stops the migration after the record in flight.
    if threading.current_thread() is not threading.main_thread():
        return None

    def _handler(signum, frame):
        logger.warning("migration_cancel_requested")
        cancel.set()

    return signal.signal(signal.SIGINT, _handler)


def _restore_cancel_handler(previous) -> None:
    if previous is not None:
        signal.signal(signal.SIGINT, previous)


def main():
    app()


if __name__ == "__main__":
    main()
