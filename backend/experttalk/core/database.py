import logging
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy import text, MetaData
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.orm import declarative_base

from .config import settings

logger = logging.getLogger(__name__)

# Naming convention for database constraints
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

Base = declarative_base(metadata=MetaData(naming_convention=convention))


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine; pool sizing only applies to server databases."""
    options = {"echo": echo, "future": True}
    if database_url.startswith("postgresql"):
        options.update(
            pool_pre_ping=True,
            pool_recycle=300,
            pool_size=20,
            max_overflow=10,
            pool_timeout=30,
            connect_args={
                "server_settings": {
                    "application_name": "experttalk_backend",
                    "timezone": "UTC",
                },
                "command_timeout": 60,
            },
        )
    return create_async_engine(database_url, **options)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = create_engine_for_url(settings.DATABASE_URL, echo=settings.DEBUG)

async_session_factory = create_session_factory(engine)


async def check_db_connection(bind: AsyncEngine) -> bool:
    try:
        async with bind.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection error: {e}")
        return False


async def init_db(bind: AsyncEngine) -> None:
    # Registers every mapped table on Base.metadata
    from experttalk.models import chat_session, payment, user  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")


# Dependency to get DB session
async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            raise e
