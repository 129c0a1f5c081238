"""History store for finished question/answer pairs.

The relay only needs ``append`` and ``list_recent``; ``clear`` backs the
admin route. Repositories are synchronous (pg8000 is a blocking driver) and
must tolerate concurrent appends from independent sessions. ``HistoryWriter``
runs appends off the request path as detached tasks.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Protocol, Set

import anyio
import pg8000.dbapi
from google.cloud.sql.connector import Connector, IPTypes

from askrelay.config import Settings
from askrelay.models.domain import HistoryEntry
from askrelay.services.errors import SinkError

logger = logging.getLogger(__name__)


class HistorySink(Protocol):
    def append(self, question: str, answer: str) -> None: ...

    def list_recent(self, limit: int) -> List[HistoryEntry]: ...

    def clear(self) -> None: ...


class CloudSqlHistoryRepository:
    """History rows in PostgreSQL, through the Cloud SQL connector or a plain host.

    The ``history`` table is provisioned outside this service.
    """

    def __init__(self, settings: Settings, connector: Optional[Connector] = None):
        self.settings = settings
        self.connector = connector
        if connector is not None:
            logging.info(f"History repository using Cloud SQL instance {settings.cloud_sql_instance}")
        else:
            logging.info(f"History repository using {settings.db_host}:{settings.db_port}/{settings.db_name}")

    @contextmanager
    def _get_conn(self) -> Iterator[Any]:
        """Gets a connection and ensures it's closed."""
        conn = None
        try:
            if self.connector is not None:
                conn = self.connector.connect(
                    self.settings.cloud_sql_instance,
                    "pg8000",
                    user=self.settings.db_user,
                    password=self.settings.db_password,
                    db=self.settings.db_name,
                    ip_type=IPTypes.PUBLIC,
                )
            else:
                conn = pg8000.dbapi.connect(
                    user=self.settings.db_user,
                    password=self.settings.db_password,
                    host=self.settings.db_host,
                    port=self.settings.db_port,
                    database=self.settings.db_name,
                )
            yield conn
        finally:
            if conn:
                conn.close()

    def append(self, question: str, answer: str) -> None:
        cur = None
        with self._get_conn() as conn:
            try:
                cur = conn.cursor()
                cur.execute(
                    "INSERT INTO history (question, answer) VALUES (%s, %s)",
                    (question, answer),
                )
            finally:
                if cur:
                    cur.close()
            conn.commit()

    def list_recent(self, limit: int) -> List[HistoryEntry]:
        cur = None
        with self._get_conn() as conn:
            try:
                cur = conn.cursor()
                cur.execute(
                    """
                    SELECT question, answer, created_at
                    FROM history
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    (limit,),
                )
                rows = cur.fetchall()
            finally:
                if cur:
                    cur.close()
        return [HistoryEntry(question=q, answer=a, created_at=ts) for q, a, ts in rows]

    def clear(self) -> None:
        cur = None
        with self._get_conn() as conn:
            try:
                cur = conn.cursor()
                cur.execute("DELETE FROM history")
            finally:
                if cur:
                    cur.close()
            conn.commit()


class MemoryHistoryRepository:
    """Process-local history, for development and tests."""

    def __init__(self) -> None:
        self._entries: List[HistoryEntry] = []
        self._lock = threading.Lock()

    def append(self, question: str, answer: str) -> None:
        entry = HistoryEntry(
            question=question,
            answer=answer,
            created_at=dt.datetime.now(dt.timezone.utc),
        )
        with self._lock:
            self._entries.append(entry)

    def list_recent(self, limit: int) -> List[HistoryEntry]:
        with self._lock:
            return list(reversed(self._entries[-limit:])) if limit > 0 else []

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class HistoryWriter:
    """Fire-and-forget appends with an observable error channel.

    ``schedule`` returns the background task; the request path never awaits
    it. A failed append finishes the task with ``SinkError``, which is logged
    here and otherwise only visible to whoever inspects the task.
    """

    def __init__(self, sink: HistorySink) -> None:
        self.sink = sink
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, question: str, answer: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._append(question, answer))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def _append(self, question: str, answer: str) -> None:
        try:
            await anyio.to_thread.run_sync(self.sink.append, question, answer)
        except Exception as exc:
            raise SinkError(f"History append failed: {exc}") from exc
        logger.debug("History entry saved (%d chars)", len(answer))

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("History append cancelled before completion")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("DB insert error: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-flight appends; used at shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
