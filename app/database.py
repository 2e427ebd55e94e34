"""Database utilities for the BackLogus service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if self._engine.dialect.name == "sqlite":
            self._configure_sqlite(self._engine)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @staticmethod
    def _configure_sqlite(engine: AsyncEngine) -> None:
        """Enforce foreign keys and let SQLAlchemy own BEGIN so SAVEPOINT works."""

        @event.listens_for(engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, _connection_record) -> None:
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _on_begin(connection) -> None:
            connection.exec_driver_sql("BEGIN")

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        table_names = set(inspector.get_table_names())

        def _ensure_column(
            table: str, name: str, ddl: str, init_sql: str | None = None
        ) -> None:
            if table not in table_names:
                return
            existing_columns = {
                column["name"] for column in inspector.get_columns(table)
            }
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))

        _ensure_column(
            "users",
            "theme_preference",
            "ALTER TABLE users ADD COLUMN theme_preference VARCHAR(16) DEFAULT 'system'",
            "UPDATE users SET theme_preference = 'system' WHERE theme_preference IS NULL",
        )
        for table in ("user_games", "user_movies", "user_shows", "user_books"):
            _ensure_column(
                table,
                "rating",
                f"ALTER TABLE {table} ADD COLUMN rating FLOAT",
            )
        _ensure_column(
            "user_books",
            "current_page",
            "ALTER TABLE user_books ADD COLUMN current_page INTEGER",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session
