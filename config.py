import os
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        reports_dir: Path,
        token_secret: str,
        token_max_age_hours: int,
        log_level: str,
        scope_aggregates_to_owner: bool,
        auto_create_schema: bool,
    ) -> None:
        self.database_url = database_url
        self.reports_dir = reports_dir
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.log_level = log_level
        self.scope_aggregates_to_owner = scope_aggregates_to_owner
        self.auto_create_schema = auto_create_schema


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def load_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    reports_dir = Path(os.getenv("BUDGET_REPORTS_DIR", str(data_dir / "reports")))
    token_secret = os.getenv(
        "BUDGET_TOKEN_SECRET",
        "4c1d0f9a7be2d8a35e6f0b21c9a8d7e6f5a4b3c2d1e0f9a8b7c6d5e4f3a2b1c0",
    )
    token_max_age_hours = int(os.getenv("BUDGET_TOKEN_MAX_AGE_HOURS", "24"))
    log_level = os.getenv("BUDGET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        reports_dir=reports_dir,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        log_level=log_level,
        scope_aggregates_to_owner=_env_flag("BUDGET_SCOPE_AGGREGATES_TO_OWNER", "0"),
        auto_create_schema=_env_flag("BUDGET_AUTO_CREATE_SCHEMA", "1"),
    )
