import json

import aiosqlite

from warden.channel import Handler
from warden.history.models import SessionSummary
from warden.logging import get_logger

_logger = get_logger(__name__)

HISTORY_LIMIT = 100

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    task TEXT NOT NULL,
    status TEXT NOT NULL,
    mode TEXT NOT NULL DEFAULT 'single',
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    project_path TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    duration INTEGER NOT NULL,
    terminal_count INTEGER NOT NULL DEFAULT 1,
    stats TEXT,
    usage TEXT,
    activity_log TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_time);
"""

SQL_SAVE = """
INSERT OR REPLACE INTO sessions
    (id, task, status, mode, provider, model, project_path, start_time, end_time,
     duration, terminal_count, stats, usage, activity_log)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

SQL_PRUNE = """
DELETE FROM sessions
WHERE id NOT IN (SELECT id FROM sessions ORDER BY start_time DESC LIMIT ?)
"""


class HistoryStore:
    def __init__(self, conn: aiosqlite.Connection, limit: int = HISTORY_LIMIT):
        self.conn = conn
        self.limit = limit

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def save(self, summary: SessionSummary) -> None:
        await self.conn.execute(
            SQL_SAVE,
            (
                summary.id,
                summary.task,
                summary.status,
                summary.mode,
                summary.provider,
                summary.model,
                summary.project_path,
                summary.start_time.isoformat(),
                summary.end_time.isoformat(),
                summary.duration,
                summary.terminal_count,
                json.dumps(summary.stats),
                json.dumps(summary.usage),
                json.dumps(summary.activity_log),
            ),
        )
        await self.conn.execute(SQL_PRUNE, (self.limit,))
        await self.conn.commit()

    async def get(self, summary_id: str) -> SessionSummary | None:
        rows = await self.conn.execute_fetchall("SELECT * FROM sessions WHERE id = ?", (summary_id,))
        if not rows:
            return None
        return SessionSummary(**rows[0])

    async def list_recent(self, limit: int = 20) -> list[SessionSummary]:
        rows = await self.conn.execute_fetchall(
            "SELECT * FROM sessions ORDER BY start_time DESC LIMIT ?",
            (limit,),
        )
        return [SessionSummary(**row) for row in rows]

    async def count(self) -> int:
        rows = await self.conn.execute_fetchall("SELECT COUNT(*) AS n FROM sessions")
        return rows[0]["n"]

    async def delete(self, summary_id: str) -> bool:
        cursor = await self.conn.execute("DELETE FROM sessions WHERE id = ?", (summary_id,))
        await self.conn.commit()
        return cursor.rowcount > 0


def make_history_handler(store: HistoryStore) -> Handler:
    async def handle(event) -> None:
        await store.save(event.summary)
        _logger.info("Saved session %s (%s, %ds)", event.summary.id, event.summary.status, event.summary.duration)

    return handle
