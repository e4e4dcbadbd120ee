from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from multistock.core.logging_config import get_logger
from multistock.core_settings import Settings, get_settings
from multistock.domain.errors import PartitionMissing, StoreTimeout, StoreUnavailable
from multistock.domain.models import PARTITION_SCHEMA, PlatformBase
from multistock.domain.partition import PartitionHandle

logger = get_logger(__name__)

# PostgreSQL SQLSTATEs
_TIMEOUT_CODES = {"57014", "55P03"}  # query_canceled, lock_not_available
_MISSING_RELATION_CODES = {"42P01", "3F000"}  # undefined_table, invalid_schema_name


def create_store_engine(url: str, settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    if url.startswith("sqlite"):
        # One shared connection: attached partition databases live per connection.
        return create_engine(
            url,
            echo=False,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False, "timeout": settings.DB_LOCK_TIMEOUT_MS / 1000},
        )
    return create_engine(
        url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        isolation_level="READ COMMITTED",
        connect_args={
            "options": (
                f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS} "
                f"-c lock_timeout={settings.DB_LOCK_TIMEOUT_MS}"
            )
        },
    )


settings = get_settings()
engine = create_store_engine(settings.database_url, settings)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_models(bind: Optional[Engine] = None):
    """Create the platform tables (tenants). Partition tables are provisioned per tenant."""
    PlatformBase.metadata.create_all(bind or engine)


def platform_session(bind: Engine) -> Session:
    return Session(bind=bind, autoflush=False, expire_on_commit=False)


def partition_session(bind: Engine, partition: PartitionHandle) -> Session:
    """Session whose tenant-scoped tables all resolve inside ``partition``."""
    scoped = bind.execution_options(schema_translate_map={PARTITION_SCHEMA: partition.name})
    session = Session(bind=scoped, autoflush=False, expire_on_commit=False)
    session.info["partition"] = partition
    return session


def translate_store_error(exc: SQLAlchemyError, partition: Optional[PartitionHandle] = None):
    """Map a driver/pool error onto the domain taxonomy. Returns None if unmapped."""
    if isinstance(exc, PoolTimeoutError):
        return StoreTimeout("Timed out waiting for a database connection")
    if isinstance(exc, DBAPIError):
        pgcode = getattr(exc.orig, "pgcode", None)
        text = str(exc.orig).lower()
        if pgcode in _TIMEOUT_CODES or "database is locked" in text:
            return StoreTimeout("The database did not answer within the configured timeout")
        if partition is not None and isinstance(exc, (ProgrammingError, OperationalError)):
            if (
                pgcode in _MISSING_RELATION_CODES
                or "no such table" in text
                or "unknown database" in text
            ):
                return PartitionMissing(partition.tenant_code, partition.name)
        if isinstance(exc, OperationalError) or exc.connection_invalidated:
            return StoreUnavailable("The database is unavailable")
    return None


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Unit of work on one session/connection: commit on success, rollback on any exit.

    Driver errors raised inside are re-raised as domain errors; domain errors
    pass through untouched after the rollback.
    """
    partition = session.info.get("partition")
    try:
        yield session
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        mapped = translate_store_error(exc, partition)
        if mapped is None:
            raise
        if isinstance(mapped, PartitionMissing):
            logger.error(
                "Partition missing for registered tenant",
                extra={"extra_fields": {"tenant_code": mapped.tenant_code, "partition": mapped.partition}},
            )
        else:
            logger.warning(f"Transaction rolled back: {mapped.code}", exc_info=True)
        raise mapped from exc
    except BaseException:
        session.rollback()
        raise


@contextmanager
def reading(session: Session) -> Iterator[Session]:
    """Read-only scope with the same error translation; ends the implicit transaction."""
    partition = session.info.get("partition")
    try:
        yield session
    except SQLAlchemyError as exc:
        session.rollback()
        mapped = translate_store_error(exc, partition)
        if mapped is None:
            raise
        raise mapped from exc
    else:
        session.commit()
