import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import models  # noqa: E402,F401  registers tables on Base.metadata
from config import load_settings  # noqa: E402
from database import Base, build_engine  # noqa: E402

alembic_config = context.config
if alembic_config.config_file_name is not None:
    fileConfig(alembic_config.config_file_name)

logger = logging.getLogger("alembic.env")


def _database_url() -> str:
    # `alembic -x database_url=sqlite:///other.db upgrade head` wins over env settings
    override = context.get_x_argument(as_dictionary=True).get("database_url")
    return override or load_settings().database_url


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        render_as_batch=True,
        compare_type=True,
        **kwargs,
    )


def run_offline(url: str) -> None:
    _configure(url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    engine = build_engine(url)
    try:
        with engine.connect() as connection:
            _configure(connection=connection)
            with context.begin_transaction():
                logger.info(f"migrating: url={engine.url!r}")
                context.run_migrations()
    finally:
        engine.dispose()


url = _database_url()
if context.is_offline_mode():
    run_offline(url)
else:
    run_online(url)
