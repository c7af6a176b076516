"""Database connection pool and transaction management."""
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional, TypeVar

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kyver_invoices.config import Settings, get_settings
from kyver_invoices.core.exceptions import StoreUnavailableError
from kyver_invoices.database.models import Base
from kyver_invoices.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Driver and pool failures that mean "try again later", not "bad request"
_UNAVAILABLE_ERRORS = (
    sa_exc.TimeoutError,
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    ConnectionError,
)


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine with a bounded connection pool.

    Callers block for up to ``database_pool_timeout`` seconds when every
    pooled connection is checked out; there is no overflow.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    kwargs: dict[str, Any] = {
        "echo": settings.database_echo,
        "pool_pre_ping": True,  # Verify connections before using
    }
    if ":memory:" not in settings.database_url:
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=0,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    engine = create_async_engine(settings.database_url, **kwargs)
    if make_url(settings.database_url).get_backend_name() == "sqlite":
        _begin_immediate(engine)
    return engine


def _begin_immediate(engine: AsyncEngine) -> None:
    """
    Make SQLite take the write lock when a transaction begins.

    pysqlite defers BEGIN until the first write, so two readers that both
    intend to update the same row deadlock on the lock upgrade. Row locks
    (``SELECT ... FOR UPDATE``) are ignored by SQLite; serializing writers
    here gives the same guarantee.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Store:
    """
    Pooled, transactional access to the invoice database.

    All reads and writes of invoices and payment events go through
    ``transaction()`` or ``with_transaction()``; a connection is checked
    out for exactly one transaction and always returned to the pool.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        """
        Initialize the store.

        Args:
            settings: Optional settings (uses cached settings if not provided)
            engine: Optional pre-built engine
        """
        self.settings = settings or get_settings()
        self._engine = engine
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = create_engine(self.settings)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    async def init(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in models if they don't exist.
        """
        url = make_url(self.settings.database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("store_initialized", backend=url.get_backend_name())

    async def close(self) -> None:
        """Close database connections and dispose of the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("store_closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Open one session and one transaction.

        Commits when the block exits normally and rolls back on any
        exception, including cancellation. The connection goes back to
        the pool on every exit path.

        Yields:
            AsyncSession: Session bound to the open transaction

        Raises:
            StoreUnavailableError: If no connection could be used
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except _UNAVAILABLE_ERRORS as e:
            logger.warning(
                "store_unavailable",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StoreUnavailableError(f"Store unavailable: {e}", original_error=e) from e

    async def with_transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run ``fn`` inside a transaction, retrying while the store is unavailable.

        The whole transaction is replayed on retry, so ``fn`` must not have
        side effects outside the session.

        Args:
            fn: Async callable receiving the session

        Returns:
            Whatever ``fn`` returns

        Raises:
            StoreUnavailableError: After ``store_retry_attempts`` failed attempts
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(StoreUnavailableError),
            stop=stop_after_attempt(self.settings.store_retry_attempts),
            wait=wait_exponential(multiplier=self.settings.store_retry_base_delay, max=10),
            before_sleep=self._log_retry,
            reraise=True,
        )

        result: T
        async for attempt in retrying:
            with attempt:
                async with self.transaction() as session:
                    result = await fn(session)
        return result

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        metrics.record_store_retry()
        logger.warning(
            "store_transaction_retry",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    async def ping(self) -> None:
        """Run a trivial query; raises StoreUnavailableError when unreachable."""
        async with self.transaction() as session:
            await session.execute(text("SELECT 1"))
