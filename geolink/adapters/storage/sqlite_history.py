"""
SQLite-based execution history for the GeoLink rule engine.

Stores one row per successful execution so the rate gate can count
executions inside a trailing window.
"""

import aiosqlite
import time
from datetime import datetime, timezone
from typing import List, Optional
from geolink.observability.logging_setup import get_logger

log = get_logger("geolink.history")

# SQLite 스키마
SCHEMA = """
CREATE TABLE IF NOT EXISTS executions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id INTEGER NOT NULL,
    identity TEXT NOT NULL,
    executed_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_exec_rule_identity ON executions(rule_id, identity, executed_at);
"""

class SQLiteExecutionHistory:
    """SQLite 기반 실행 기록 저장소"""

    def __init__(self, path: str, retention_sec: int = 7 * 86400):
        """
        초기화합니다.

        Args:
            path: SQLite 데이터베이스 파일 경로
            retention_sec: 기록 보존 기간 (초)
        """
        self.path = path
        self.retention = retention_sec

    async def init(self) -> None:
        """데이터베이스를 초기화합니다."""
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(SCHEMA)
            await db.commit()
        log.info(f"SQLiteExecutionHistory 스키마 초기화 완료: {self.path}")

    async def record(self, rule_id: int, identity: str, executed_at: datetime) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO executions (rule_id, identity, executed_at) VALUES (?, ?, ?)",
                (rule_id, identity, executed_at.timestamp())
            )
            await db.commit()

    async def timestamps(self, rule_id: int, identity: str, since: datetime) -> List[datetime]:
        """
        since 이후의 실행 시각을 조회합니다.

        Returns:
            UTC datetime 목록 (오래된 순)
        """
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "SELECT executed_at FROM executions "
                "WHERE rule_id = ? AND identity = ? AND executed_at > ? ORDER BY executed_at ASC",
                (rule_id, identity, since.timestamp())
            )
            rows = await cursor.fetchall()
        return [datetime.fromtimestamp(row[0], tz=timezone.utc) for row in rows]

    async def gc(self, now: Optional[float] = None) -> int:
        """
        보존 기간이 지난 기록을 정리합니다.

        Returns:
            삭제된 항목 수
        """
        if now is None:
            now = time.time()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "DELETE FROM executions WHERE executed_at < ?",
                (now - self.retention,)
            )
            await db.commit()
            deleted = cursor.rowcount
        if deleted > 0:
            log.info(f"만료된 실행 기록 {deleted}개 정리됨")
        return deleted
