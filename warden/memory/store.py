from collections import defaultdict
from datetime import UTC, datetime

import aiosqlite

from warden.memory.models import Learning, LearningCategory, LearningSource

MAX_LEARNINGS_PER_PROJECT = 200

SCHEMA = """
CREATE TABLE IF NOT EXISTS learnings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_path TEXT NOT NULL,
    category TEXT NOT NULL,
    content TEXT NOT NULL,
    confidence REAL NOT NULL,
    session_count INTEGER NOT NULL DEFAULT 1,
    source TEXT NOT NULL DEFAULT 'auto',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_learnings_project ON learnings(project_path, category);
"""

SQL_INSERT = """
INSERT INTO learnings
    (project_path, category, content, confidence, session_count, source, created_at, updated_at)
VALUES (?, ?, ?, ?, 1, ?, ?, ?)
"""

SQL_REINFORCE = """
UPDATE learnings
SET session_count = session_count + 1, confidence = MAX(confidence, ?), updated_at = ?
WHERE id = ?
"""

SQL_FIND_SAME = """
SELECT id FROM learnings
WHERE project_path = ? AND category = ? AND lower(content) = lower(?)
"""

SQL_TOP_BY_CATEGORY = """
SELECT * FROM (
    SELECT *, ROW_NUMBER() OVER (
        PARTITION BY category ORDER BY confidence DESC, updated_at DESC
    ) AS rank_in_category
    FROM learnings
    WHERE project_path = ?
)
WHERE rank_in_category <= ?
ORDER BY category, rank_in_category
"""

SQL_PRUNE = """
DELETE FROM learnings
WHERE project_path = ? AND id NOT IN (
    SELECT id FROM learnings WHERE project_path = ?
    ORDER BY confidence DESC, updated_at DESC
    LIMIT ?
)
"""

SQL_LIST_PROJECTS = """
SELECT project_path, COUNT(*) AS entry_count, MAX(updated_at) AS last_updated
FROM learnings
GROUP BY project_path
ORDER BY last_updated DESC
"""


class LearningStore:
    def __init__(self, conn: aiosqlite.Connection, cap: int = MAX_LEARNINGS_PER_PROJECT):
        self.conn = conn
        self.cap = cap

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()

    async def add(
        self,
        project_path: str,
        category: LearningCategory,
        content: str,
        confidence: float,
        source: LearningSource = LearningSource.AUTO,
    ) -> int:
        """Store a learning, reinforcing an identical one instead of duplicating it."""
        now = datetime.now(UTC).isoformat()
        rows = await self.conn.execute_fetchall(SQL_FIND_SAME, (project_path, category.value, content))
        if rows:
            learning_id = rows[0]["id"]
            await self.conn.execute(SQL_REINFORCE, (confidence, now, learning_id))
        else:
            cursor = await self.conn.execute(
                SQL_INSERT,
                (project_path, category.value, content, confidence, source.value, now, now),
            )
            learning_id = cursor.lastrowid
        await self.conn.execute(SQL_PRUNE, (project_path, project_path, self.cap))
        await self.conn.commit()
        return learning_id

    async def get(self, learning_id: int) -> Learning | None:
        rows = await self.conn.execute_fetchall("SELECT * FROM learnings WHERE id = ?", (learning_id,))
        if not rows:
            return None
        return Learning(**rows[0])

    async def list_entries(self, project_path: str) -> list[Learning]:
        rows = await self.conn.execute_fetchall(
            "SELECT * FROM learnings WHERE project_path = ? ORDER BY confidence DESC, updated_at DESC",
            (project_path,),
        )
        return [Learning(**row) for row in rows]

    async def top_by_category(self, project_path: str, per_category: int = 5) -> dict[LearningCategory, list[Learning]]:
        rows = await self.conn.execute_fetchall(SQL_TOP_BY_CATEGORY, (project_path, per_category))
        grouped: dict[LearningCategory, list[Learning]] = defaultdict(list)
        for row in rows:
            learning = Learning(**row)
            grouped[learning.category].append(learning)
        return dict(grouped)

    async def count(self, project_path: str) -> int:
        rows = await self.conn.execute_fetchall(
            "SELECT COUNT(*) AS n FROM learnings WHERE project_path = ?", (project_path,)
        )
        return rows[0]["n"]

    async def delete(self, learning_id: int) -> bool:
        cursor = await self.conn.execute("DELETE FROM learnings WHERE id = ?", (learning_id,))
        await self.conn.commit()
        return cursor.rowcount > 0

    async def clear(self, project_path: str) -> int:
        cursor = await self.conn.execute("DELETE FROM learnings WHERE project_path = ?", (project_path,))
        await self.conn.commit()
        return cursor.rowcount

    async def list_projects(self) -> list[dict]:
        rows = await self.conn.execute_fetchall(SQL_LIST_PROJECTS)
        return [dict(row) for row in rows]
