# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines share one PostgreSQL schema:
# - Async engine (asyncpg) for FastAPI handlers, middleware and
#   background tasks scheduled with BackgroundTasks.
# - Sync engine (psycopg2) for Celery workers, created lazily.
#
# COMMIT POLICY:
# 1. Dependency-injected (get_async_session via Depends):
#    Auto-commits when the request handler returns, rolls back on error.
#    Handlers call session.flush() when they need a generated ID.
#
# 2. Self-managed (async_session_factory() directly):
#    Used by background tasks (agent metrics, brain memory) and the audit
#    middleware, which run outside the request dependency lifecycle.
#    These MUST commit explicitly.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from payrollpro.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# echo=True in debug mode logs every SQL statement.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False keeps loaded attributes readable after commit,
# which async sessions cannot lazily refresh.
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — For Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------
# psycopg2 is only needed inside workers, so the engine is built on first use.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _sync_engine


def _get_sync_session_factory():
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session for Celery workers.

    Usage in Celery tasks:
        with get_sync_session() as session:
            upload = session.get(KnowledgeUpload, upload_id)
            upload.status = UploadStatus.COMPLETED
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    Usage in route handlers:
        @router.get("/employees")
        async def list_employees(session: AsyncSession = Depends(get_async_session)):
            result = await session.execute(select(Employee))
            return result.scalars().all()

    The session commits when the request completes and rolls back if the
    handler raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
