"""Shape cached rows into the payload the dashboard charts consume."""

import logging
import re
from collections import defaultdict

from tallman_dashboard.database import get_all_rows

logger = logging.getLogger(__name__)

_NUMBER_NOISE_RE = re.compile(r"[$,%\s]")


def parse_number_value(value) -> float:
    """Parse a cached value ("$1,168", "42", "12.5%") into a number.

    Anything unparseable counts as 0.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    cleaned = _NUMBER_NOISE_RE.sub("", str(value))
    try:
        number = float(cleaned)
    except ValueError:
        return 0
    return int(number) if number.is_integer() else number


def build_dashboard_payload(rows: list[dict]) -> dict:
    """Group rows by chart group, keeping store order within each group."""
    groups: dict[str, list[dict]] = defaultdict(list)
    last_updated = None
    skipped = 0

    for row in rows:
        group = (row.get("chartGroup") or "").strip()
        if not group:
            skipped += 1
            continue
        groups[group].append({
            "id": row["id"],
            "chartName": row.get("chartName") or "",
            "variableName": row.get("variableName") or "",
            "serverName": row.get("serverName"),
            "value": parse_number_value(row.get("value")),
            "hasError": bool(row.get("error")),
        })
        stamp = row.get("lastUpdated")
        if stamp and (last_updated is None or stamp > last_updated):
            last_updated = stamp

    if skipped:
        logger.debug("Skipped %d rows without a chart group", skipped)

    return {
        "groups": dict(groups),
        "lastUpdated": last_updated,
        "rowCount": sum(len(points) for points in groups.values()),
    }


def get_dashboard_data(db_path=None) -> dict:
    return build_dashboard_payload(get_all_rows(db_path))
