"""
DeployKit — Datastore Connection Management
=============================================

What:  Async SQLAlchemy engine for the application runtime shell, plus the
       start-up wait that tolerates a datastore that is not accepting
       connections yet.
How:   The engine is created lazily from the ParameterSet: the host is the
       datastore's container identity, never a fixed address.
       `wait_for_datastore()` pings with `SELECT 1` under a tenacity retry
       policy (exponential backoff with jitter). When the budget runs out it
       raises DatastoreUnavailableError.

Why a wait at all:
    Declaration order does not guarantee readiness; only the datastore has
    a readiness probe, so the application has to retry on its own.

Connection Pooling:
    pool_size=7:        seven pooled connections per process
    pool_pre_ping:      validates connections after a datastore restart
    pool_recycle=3600:  recycles connections every hour
"""

import logging
from typing import Literal, Optional

from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from deploykit.config import ParameterSet, settings
from deploykit.exceptions import DatastoreUnavailableError

logger = logging.getLogger(__name__)

DatastoreTarget = Literal["primary", "test"]

_engine: Optional[AsyncEngine] = None


def datastore_host(parameters: ParameterSet, target: DatastoreTarget = "primary") -> str:
    """Container identity of the selected datastore."""
    if target == "test":
        return parameters.test_db_container_name
    return parameters.db_container_name


def database_url(
    parameters: ParameterSet,
    target: DatastoreTarget = "primary",
    port: Optional[int] = None,
) -> URL:
    """asyncpg URL for the selected datastore; credentials are escaped by URL.create."""
    return URL.create(
        drivername="postgresql+asyncpg",
        username=parameters.db_username,
        password=parameters.db_password,
        host=datastore_host(parameters, target),
        port=port or settings.db_port,
        database=parameters.db_name,
    )


# ── Engine lifecycle ──────────────────────────────────────────────────────

def create_engine(parameters: ParameterSet, target: Optional[DatastoreTarget] = None) -> AsyncEngine:
    selected = target or settings.datastore_target
    return create_async_engine(
        database_url(parameters, selected),
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        connect_args={"timeout": settings.db_connect_timeout},
        echo=settings.log_level == "DEBUG",
    )


def get_engine(parameters: Optional[ParameterSet] = None) -> AsyncEngine:
    """
    Process-wide engine, created on first use.

    The first call must pass the ParameterSet; later calls may omit it.
    """
    global _engine
    if _engine is None:
        if parameters is None:
            raise RuntimeError("get_engine() called before parameters were loaded")
        _engine = create_engine(parameters)
        logger.info(
            "Engine created for %s datastore at %s:%d",
            settings.datastore_target,
            datastore_host(parameters, settings.datastore_target),
            settings.db_port,
        )
    return _engine


async def dispose_engine() -> None:
    """Close all pooled connections; safe to call when no engine exists."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


# ── Readiness ─────────────────────────────────────────────────────────────

async def ping(engine: AsyncEngine) -> None:
    """Run `SELECT 1`; raises whatever the driver raises when unreachable."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def wait_for_datastore(
    engine: AsyncEngine,
    max_attempts: Optional[int] = None,
    min_wait: Optional[float] = None,
    max_wait: Optional[float] = None,
) -> int:
    """
    Block until the datastore answers `SELECT 1`.

    Returns the number of attempts it took.

    Raises:
        DatastoreUnavailableError: every attempt failed.
    """
    attempts = max_attempts or settings.retry_max_attempts
    initial = min_wait if min_wait is not None else settings.retry_min_wait
    retrying = AsyncRetrying(
        # asyncpg, socket and SQLAlchemy errors all mean "not yet"
        retry=retry_if_exception_type(Exception),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(
            initial=initial,
            max=max_wait if max_wait is not None else settings.retry_max_wait,
            jitter=initial,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=False,
    )

    made = 0
    try:
        async for attempt in retrying:
            with attempt:
                made = attempt.retry_state.attempt_number
                await ping(engine)
    except RetryError as exc:
        last = exc.last_attempt.exception() if exc.last_attempt else None
        logger.error("Datastore unreachable after %d attempts: %s", attempts, last)
        raise DatastoreUnavailableError(
            message=f"Datastore did not accept connections after {attempts} attempts",
            attempts=attempts,
            target=settings.datastore_target,
            context={"last_error": str(last) if last else None},
        ) from exc

    logger.info("Datastore reachable after %d attempt(s)", made)
    return made
