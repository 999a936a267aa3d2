from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from tgdigest.config import get_settings


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    settings = get_settings()
    engine_kwargs: dict[str, object] = {"pool_pre_ping": True}
    if settings.database_url.startswith("postgresql"):
        min_conns = max(1, min(settings.db_min_conns, settings.db_max_conns))
        engine_kwargs["pool_size"] = min_conns
        engine_kwargs["max_overflow"] = max(0, settings.db_max_conns - min_conns)
        engine_kwargs["pool_recycle"] = min(
            settings.db_max_conn_lifetime, settings.db_max_conn_idle_time
        )
        engine_kwargs["connect_args"] = {"connect_timeout": 5}
    return create_engine(settings.database_url, **engine_kwargs)


def ping() -> bool:
    with get_engine().connect() as connection:
        connection.execute(text("SELECT 1"))
    return True
