"""Seed the row store from the versioned row-definition file.

Usage:
    python -m tallman_dashboard.seed [path] [--reset] [--db PATH]
"""

import argparse
import json
import logging
from pathlib import Path

from pydantic import ValidationError

from tallman_dashboard.config import Settings
from tallman_dashboard.database import (
    count_rows,
    delete_all_rows,
    get_all_rows,
    init_db,
    upsert_rows,
)
from tallman_dashboard.schemas import ChartRow

logger = logging.getLogger(__name__)

# Cached result fields that survive a re-seed of an existing row.
RESULT_FIELDS = ("value", "lastUpdated", "error", "errorType")


def load_seed_file(path: Path | str) -> tuple[int, list[dict]]:
    """Read and validate a seed file; returns (version, rows)."""
    with open(path, encoding="utf-8") as f:
        payload = json.load(f)

    if not isinstance(payload, dict) or "rows" not in payload:
        raise ValueError(f"{path}: expected an object with a 'rows' list")
    version = payload.get("version")
    if not isinstance(version, int):
        raise ValueError(f"{path}: missing integer 'version'")

    rows = []
    seen = set()
    for i, raw in enumerate(payload["rows"]):
        try:
            row = ChartRow.model_validate(raw).to_row()
        except ValidationError as exc:
            raise ValueError(f"{path}: row {i} is invalid: {exc}") from exc
        if row["id"] in seen:
            raise ValueError(f"{path}: duplicate row id {row['id']!r}")
        seen.add(row["id"])
        rows.append(row)
    return version, rows


def seed_rows(db_path=None, seed_file=None, reset: bool = False) -> int:
    """Load the seed file into the store and return the number of rows written.

    Without ``reset`` the cached result of a row that already exists is kept;
    only its definition is refreshed from the file.
    """
    seed_file = Path(seed_file or Settings().seed_file)
    version, rows = load_seed_file(seed_file)
    init_db(db_path)

    if reset:
        delete_all_rows(db_path)
    else:
        existing = {r["id"]: r for r in get_all_rows(db_path)}
        for row in rows:
            cached = existing.get(row["id"])
            if cached:
                for field in RESULT_FIELDS:
                    row[field] = cached[field]

    written = upsert_rows(rows, db_path)
    logger.info("Seeded %d rows from %s (version %d)", written, seed_file.name, version)
    return written


def seed_if_empty(db_path=None, seed_file=None) -> int:
    """Seed only when the store has no rows yet."""
    init_db(db_path)
    if count_rows(db_path):
        return 0
    return seed_rows(db_path, seed_file)


def main(argv=None) -> None:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Seed dashboard row definitions.")
    parser.add_argument("path", nargs="?", default=str(settings.seed_file),
                        help="seed file (default: %(default)s)")
    parser.add_argument("--reset", action="store_true",
                        help="drop all rows, including cached values, first")
    parser.add_argument("--db", default=str(settings.db_path),
                        help="SQLite file (default: %(default)s)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    count = seed_rows(args.db, args.path, reset=args.reset)
    print(f"Seeded {count} rows into {args.db}.")


if __name__ == "__main__":
    main()
