"""Environment-driven settings for the metrics dashboard.

Values come from process environment variables, with a local ``.env`` file
loaded first so developers can keep backend credentials out of the shell.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

PACKAGE_DIR = Path(__file__).parent
DEFAULT_SEED_FILE = PACKAGE_DIR / "data" / "initial_rows.json"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise EnvironmentError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    db_path: Path = Path("data/dashboard.db")
    p21_dsn: str = ""
    p21_username: str = ""
    p21_password: str = ""
    por_file_path: str = ""
    query_timeout: float = 30.0
    connect_timeout: float = 15.0
    row_delay: float = 0.0
    poll_interval: float = 1.0
    seed_file: Path = DEFAULT_SEED_FILE
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment."""
        return cls(
            db_path=Path(os.getenv("DASHBOARD_DB_PATH", "data/dashboard.db")),
            p21_dsn=os.getenv("P21_DSN", "").strip(),
            p21_username=os.getenv("P21_USERNAME", "").strip(),
            p21_password=os.getenv("P21_PASSWORD", ""),
            por_file_path=os.getenv("POR_FILE_PATH", "").strip(),
            query_timeout=_float_env("QUERY_TIMEOUT_SECONDS", 30.0),
            connect_timeout=_float_env("CONNECT_TIMEOUT_SECONDS", 15.0),
            row_delay=_float_env("ROW_DELAY_SECONDS", 0.0),
            poll_interval=_float_env("POLL_INTERVAL_SECONDS", 1.0),
            seed_file=Path(os.getenv("SEED_FILE") or DEFAULT_SEED_FILE),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
