"""Utility for initializing an empty stockledger database.

The module doubles as a script (``stockledger-setup``) and as a library used
by tests or other tooling. Configuration is read through the same helpers the
runtime uses, so relative ``DataFile`` entries resolve identically.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError

from . import data_manager, log

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def create_database(destination: Path, *, overwrite: bool = False, echo: bool = False) -> Path:
    """Create a SQLite store with every stockledger table at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists. With ``overwrite`` the
    existing file is deleted first, so all data in it is lost.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists():
        if not overwrite:
            raise FileExistsError(f"Refusing to overwrite existing database: {destination}")
        log.warning("Overwriting existing database '%s'", destination)
        destination.unlink()

    destination.parent.mkdir(parents=True, exist_ok=True)

    engine = data_manager.create_store_engine(destination, echo=echo)
    try:
        data_manager.create_schema(engine)
    finally:
        engine.dispose()

    log.info("Created database '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the database named by ``DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_database(settings.data_file, overwrite=overwrite, echo=settings.echo)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(prog="stockledger-setup", description="Initialize the stockledger database")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target database if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the CLI script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- stockledger setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError, SQLAlchemyError) as exc:
        print(f"\n[ERROR] Unable to create database: {exc}")
        return 1

    print(f"\n[SUCCESS] Created database at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
