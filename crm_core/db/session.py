from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from crm_core.core.config import settings


def build_engine_kwargs(database_url: str) -> dict[str, object]:
    engine_kwargs: dict[str, object] = {"pool_pre_ping": True}
    if database_url.lower().startswith("sqlite"):
        # Dispatch fan-out and the receipt consumer touch the database from worker threads.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        return engine_kwargs

    engine_kwargs.update(
        {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_timeout": settings.db_pool_timeout_seconds,
            "pool_recycle": settings.db_pool_recycle_seconds,
        }
    )
    return engine_kwargs


engine = create_engine(settings.database_url, **build_engine_kwargs(settings.database_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
