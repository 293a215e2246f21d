from __future__ import annotations

import re
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

import aiomysql
import aiosqlite
from loguru import logger

from .config import get_settings


_MYSQL_DUPLICATE_ENTRY = 1062


class Database:
    def __init__(self) -> None:
        self._pool: aiomysql.Pool | None = None
        self._sqlite_conn: aiosqlite.Connection | None = None
        self._settings = get_settings()
        self._use_sqlite = self._should_use_sqlite()

    def _should_use_sqlite(self) -> bool:
        """Return True when any of the MySQL connection settings is missing."""
        return not all([
            self._settings.database_host,
            self._settings.database_user,
            self._settings.database_name,
        ])

    def _get_sqlite_path(self) -> Path:
        return Path(self._settings.sqlite_path).expanduser()

    def _split_sql_statements(self, sql: str) -> list[str]:
        """Split a migration script into statements.

        Quote and comment state is tracked so semicolons inside string
        literals do not terminate a statement early.
        """

        statements: list[str] = []
        statement_chars: list[str] = []
        in_single_quote = False
        in_double_quote = False
        i = 0
        length = len(sql)

        while i < length:
            char = sql[i]
            next_char = sql[i + 1] if i + 1 < length else ""

            if not in_single_quote and not in_double_quote:
                if char == "-" and next_char == "-":
                    i += 2
                    while i < length and sql[i] != "\n":
                        i += 1
                    continue
                if char == "/" and next_char == "*":
                    i += 2
                    while i + 1 < length and not (sql[i] == "*" and sql[i + 1] == "/"):
                        i += 1
                    i += 2
                    continue

            if char == "'" and not in_double_quote:
                statement_chars.append(char)
                if in_single_quote and next_char == "'":
                    statement_chars.append(next_char)
                    i += 2
                    continue
                in_single_quote = not in_single_quote
                i += 1
                continue

            if char == '"' and not in_single_quote:
                statement_chars.append(char)
                in_double_quote = not in_double_quote
                i += 1
                continue

            if char == ";" and not in_single_quote and not in_double_quote:
                statement = "".join(statement_chars).strip()
                if statement:
                    statements.append(statement)
                statement_chars = []
                i += 1
                continue

            statement_chars.append(char)
            i += 1

        remaining = "".join(statement_chars).strip()
        if remaining:
            statements.append(remaining)
        return statements

    def _adapt_sql_for_sqlite(self, sql: str) -> str:
        """Translate the MySQL dialect used by the migrations into SQLite."""
        sql = re.sub(r"\s*ENGINE\s*=\s*\w+", "", sql, flags=re.IGNORECASE)
        sql = re.sub(r"\s*DEFAULT\s+CHARSET\s*=\s*\w+", "", sql, flags=re.IGNORECASE)
        sql = re.sub(r"\s*COLLATE\s*=\s*\w+", "", sql, flags=re.IGNORECASE)
        sql = re.sub(
            r"\bINT\s+AUTO_INCREMENT\s+PRIMARY\s+KEY\b",
            "INTEGER PRIMARY KEY AUTOINCREMENT",
            sql,
            flags=re.IGNORECASE,
        )
        sql = re.sub(r"\s*COMMENT\s+'[^']*'", "", sql, flags=re.IGNORECASE)
        sql = re.sub(r"\bDATETIME\b", "TEXT", sql, flags=re.IGNORECASE)
        return sql

    @staticmethod
    def _adapt_query_for_sqlite(sql: str) -> str:
        return sql.replace("%s", "?")

    @staticmethod
    def _adapt_params_for_sqlite(params: tuple | list | None) -> tuple:
        if not params:
            return ()
        adapted: list[Any] = []
        for value in params:
            if isinstance(value, datetime):
                if value.tzinfo is not None:
                    value = value.astimezone(timezone.utc).replace(tzinfo=None)
                value = value.isoformat(sep=" ")
            elif isinstance(value, bool):
                value = int(value)
            adapted.append(value)
        return tuple(adapted)

    async def connect(self) -> None:
        if self._pool or self._sqlite_conn:
            return

        if self._use_sqlite:
            db_path = self._get_sqlite_path()
            logger.info("Connecting to SQLite database at {path}", path=str(db_path))
            self._sqlite_conn = await aiosqlite.connect(str(db_path))
            self._sqlite_conn.row_factory = aiosqlite.Row
            await self._sqlite_conn.execute("PRAGMA foreign_keys = ON")
            await self._sqlite_conn.commit()
        else:
            logger.info("Connecting to MySQL at {host}", host=self._settings.database_host)
            self._pool = await aiomysql.create_pool(
                host=self._settings.database_host,
                user=self._settings.database_user,
                password=self._settings.database_password or "",
                db=self._settings.database_name,
                autocommit=True,
                minsize=1,
                maxsize=10,
                pool_recycle=600,
                init_command="SET time_zone = '+00:00'",
            )

    async def disconnect(self) -> None:
        if self._sqlite_conn:
            logger.info("Disconnecting from SQLite database")
            await self._sqlite_conn.close()
            self._sqlite_conn = None
        elif self._pool:
            logger.info("Disconnecting from MySQL database")
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None

    def is_connected(self) -> bool:
        return self._pool is not None or self._sqlite_conn is not None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        if self._use_sqlite:
            if not self._sqlite_conn:
                raise RuntimeError("SQLite database not initialised")
            yield self._sqlite_conn
        else:
            if not self._pool:
                raise RuntimeError("Database pool not initialised")
            conn = await self._pool.acquire()
            try:
                yield conn
            finally:
                self._pool.release(conn)

    def _require_sqlite(self) -> aiosqlite.Connection:
        if not self._sqlite_conn:
            raise RuntimeError("SQLite database not initialised")
        return self._sqlite_conn

    async def execute(self, sql: str, params: tuple | None = None) -> None:
        if self._use_sqlite:
            conn = self._require_sqlite()
            await conn.execute(
                self._adapt_query_for_sqlite(sql), self._adapt_params_for_sqlite(params)
            )
            await conn.commit()
        else:
            async with self.acquire() as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute(sql, params)

    async def execute_returning_lastrowid(self, sql: str, params: tuple | None = None) -> int:
        if self._use_sqlite:
            conn = self._require_sqlite()
            cursor = await conn.execute(
                self._adapt_query_for_sqlite(sql), self._adapt_params_for_sqlite(params)
            )
            await conn.commit()
            return cursor.lastrowid if cursor.lastrowid else 0
        async with self.acquire() as conn:
            async with conn.cursor() as cursor:
                await cursor.execute(sql, params)
                last_row_id = cursor.lastrowid
        return int(last_row_id) if last_row_id is not None else 0

    async def fetch_one(self, sql: str, params: tuple | None = None) -> dict[str, Any] | None:
        if self._use_sqlite:
            conn = self._require_sqlite()
            cursor = await conn.execute(
                self._adapt_query_for_sqlite(sql), self._adapt_params_for_sqlite(params)
            )
            row = await cursor.fetchone()
            return dict(row) if row else None
        async with self.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(sql, params)
                return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: tuple | None = None) -> list[dict[str, Any]]:
        if self._use_sqlite:
            conn = self._require_sqlite()
            cursor = await conn.execute(
                self._adapt_query_for_sqlite(sql), self._adapt_params_for_sqlite(params)
            )
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]
        async with self.acquire() as conn:
            async with conn.cursor(aiomysql.DictCursor) as cursor:
                await cursor.execute(sql, params)
                return list(await cursor.fetchall())

    def is_duplicate_key_error(self, exc: BaseException) -> bool:
        """Return True when ``exc`` is a unique constraint violation."""
        if isinstance(exc, sqlite3.IntegrityError):
            return "UNIQUE" in str(exc).upper()
        if isinstance(exc, aiomysql.IntegrityError):
            code = exc.args[0] if exc.args else None
            return code == _MYSQL_DUPLICATE_ENTRY
        return False

    def _get_migrations_dir(self) -> Path:
        return Path(__file__).resolve().parent.parent.parent / "migrations"

    async def _ensure_migrations_table(self, conn: Any) -> None:
        statement = "CREATE TABLE IF NOT EXISTS migrations (name VARCHAR(255) PRIMARY KEY)"
        if self._use_sqlite:
            await conn.execute(statement)
            await conn.commit()
        else:
            async with conn.cursor() as cursor:
                await cursor.execute("SET sql_notes = 0")
                try:
                    await cursor.execute(statement)
                finally:
                    await cursor.execute("SET sql_notes = 1")

    async def _apply_migration_file(self, conn: Any, path: Path) -> None:
        sql = path.read_text(encoding="utf-8")
        if self._use_sqlite:
            sql = self._adapt_sql_for_sqlite(sql)
        statements = self._split_sql_statements(sql)

        if self._use_sqlite:
            for statement in statements:
                await conn.execute(statement)
            await conn.execute("INSERT INTO migrations (name) VALUES (?)", (path.name,))
            await conn.commit()
        else:
            async with conn.cursor() as cursor:
                for statement in statements:
                    await cursor.execute(statement)
                await cursor.execute(
                    "INSERT INTO migrations (name) VALUES (%s)",
                    (path.name,),
                )

    async def _applied_migrations(self, conn: Any) -> set[str]:
        if self._use_sqlite:
            cursor = await conn.execute("SELECT name FROM migrations")
            rows = await cursor.fetchall()
            return {dict(row)["name"] for row in rows}
        async with conn.cursor(aiomysql.DictCursor) as cursor:
            await cursor.execute("SELECT name FROM migrations")
            rows = await cursor.fetchall()
        return {row["name"] for row in rows}

    async def run_migrations(self) -> None:
        """Apply every pending ``migrations/*.sql`` file once, in name order."""
        await self.connect()
        migrations_dir = self._get_migrations_dir()
        if not migrations_dir.exists():
            logger.warning("No migrations directory found at {path}", path=str(migrations_dir))
            return

        lock_name = f"{self._settings.database_name or 'helpdesk_sync'}_migration_lock"
        lock_timeout = self._settings.migration_lock_timeout
        lock_acquired = False

        async with self.acquire() as conn:
            try:
                if not self._use_sqlite:
                    async with conn.cursor() as cursor:
                        await cursor.execute("SELECT GET_LOCK(%s, %s)", (lock_name, lock_timeout))
                        result = await cursor.fetchone()
                    lock_acquired = bool(result and result[0] == 1)
                    if not lock_acquired:
                        logger.error(
                            "Unable to obtain database migration lock {lock} within {timeout}s",
                            lock=lock_name,
                            timeout=lock_timeout,
                        )
                        raise RuntimeError("Could not obtain database migration lock")

                await self._ensure_migrations_table(conn)
                applied = await self._applied_migrations(conn)

                for path in sorted(migrations_dir.glob("*.sql")):
                    if path.name in applied:
                        continue
                    await self._apply_migration_file(conn, path)
                    logger.info("Applied migration {name}", name=path.name)
            finally:
                if lock_acquired:
                    async with conn.cursor() as cursor:
                        await cursor.execute("SELECT RELEASE_LOCK(%s)", (lock_name,))

    @asynccontextmanager
    async def acquire_lock(self, lock_name: str, timeout: int = 10) -> AsyncIterator[bool]:
        """Acquire a named database lock for coordination between worker processes.

        MySQL uses ``GET_LOCK()``. SQLite and an unconnected database always
        yield True since there is nothing to coordinate with.
        """
        if self._use_sqlite or not self._pool:
            yield True
            return

        conn = await self._pool.acquire()
        lock_acquired = False
        try:
            async with conn.cursor() as cursor:
                await cursor.execute("SELECT GET_LOCK(%s, %s)", (lock_name, timeout))
                result = await cursor.fetchone()
                lock_acquired = bool(result and result[0] == 1)

            yield lock_acquired
        finally:
            if lock_acquired:
                try:
                    async with conn.cursor() as cursor:
                        await cursor.execute("SELECT RELEASE_LOCK(%s)", (lock_name,))
                except Exception as exc:  # pragma: no cover - defensive logging
                    logger.warning(
                        "Failed to explicitly release lock {lock}: {error}",
                        lock=lock_name,
                        error=str(exc),
                    )
            self._pool.release(conn)


db = Database()
