"""Database connection and session management with async SQLAlchemy."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.core.errors import ConcurrentModification


def _engine_options(url: str) -> dict:
    # SQLite (tests, local runs) does not take a sized connection pool
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10}


# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development",
    **_engine_options(settings.DATABASE_URL),
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


# Base class for all models
class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function that yields database sessions.

    Usage in FastAPI routes:
        @router.get("/")
        async def route(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Run a block as one all-or-nothing unit of work.

    Commits when the block finishes, rolls back on any error. A version
    mismatch on flush or commit (another writer moved the entity first) is
    re-raised as ConcurrentModification.

    Usage:
        async with transaction(db):
            offer.status = "accepted"
            await db.flush()
            await orders.create_order_from_offer(...)
    """
    try:
        yield db
        await db.commit()
    except StaleDataError as e:
        await db.rollback()
        raise ConcurrentModification() from e
    except Exception:
        await db.rollback()
        raise
