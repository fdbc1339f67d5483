"""
SQLite-based receipt outbox for the GeoLink rule engine.

When a transaction succeeds on-chain but the completion bookkeeping call
fails, the receipt is kept here until a reconciliation pass completes it.
Items past the attempt limit are parked, not deleted.
"""

import aiosqlite
import time
from dataclasses import dataclass
from typing import List, Optional
from geolink.observability.logging_setup import get_logger

log = get_logger("geolink.outbox")

# SQLite 스키마
SCHEMA = """
CREATE TABLE IF NOT EXISTS receipts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id INTEGER NOT NULL,
    matched_public_key TEXT NOT NULL,
    update_id INTEGER,
    transaction_hash TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    parked INTEGER NOT NULL DEFAULT 0,
    UNIQUE (rule_id, matched_public_key, transaction_hash)
);
CREATE INDEX IF NOT EXISTS idx_receipts_created ON receipts(created_at);
"""

@dataclass
class ReceiptItem:
    """Outbox 영수증 항목"""
    id: int
    rule_id: int
    matched_public_key: str
    update_id: Optional[int]
    transaction_hash: str
    attempts: int
    last_error: Optional[str] = None
    parked: bool = False

_COLUMNS = "id, rule_id, matched_public_key, update_id, transaction_hash, attempts, last_error, parked"

def _row_to_item(row) -> ReceiptItem:
    return ReceiptItem(
        id=row[0],
        rule_id=row[1],
        matched_public_key=row[2],
        update_id=row[3],
        transaction_hash=row[4],
        attempts=row[5],
        last_error=row[6],
        parked=bool(row[7]),
    )

class SQLiteOutbox:
    """SQLite 기반 영수증 Outbox"""

    def __init__(self, path: str):
        """
        초기화합니다.

        Args:
            path: SQLite 데이터베이스 파일 경로
        """
        self.path = path
        log.info(f"SQLiteOutbox 초기화: {path}")

    async def init(self) -> None:
        """데이터베이스를 초기화합니다."""
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(SCHEMA)
            await db.commit()
        log.info(f"SQLiteOutbox 스키마 초기화 완료: {self.path}")

    async def enqueue(self, rule_id: int, matched_public_key: str,
                      update_id: Optional[int], transaction_hash: str) -> int:
        """
        영수증을 Outbox에 추가합니다. 같은 영수증은 한 번만 저장됩니다.

        Args:
            rule_id: 규칙 ID
            matched_public_key: 매치된 지갑 공개키
            update_id: 위치 업데이트 ID
            transaction_hash: 온체인 트랜잭션 해시

        Returns:
            항목 ID (이미 있으면 기존 항목 ID)
        """
        now = int(time.time())

        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO receipts "
                "(rule_id, matched_public_key, update_id, transaction_hash, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (rule_id, matched_public_key, update_id, transaction_hash, now)
            )
            await db.commit()
            if cursor.rowcount == 1:
                log.warning("receipt queued for reconciliation", rule_id=rule_id, tx=transaction_hash)
                return cursor.lastrowid
            cursor = await db.execute(
                "SELECT id FROM receipts WHERE rule_id = ? AND matched_public_key = ? AND transaction_hash = ?",
                (rule_id, matched_public_key, transaction_hash)
            )
            row = await cursor.fetchone()
            return row[0]

    async def list_ready(self, limit: int = 100) -> List[ReceiptItem]:
        """
        재시도 대상 항목을 오래된 순으로 조회합니다 (삭제하지 않음).

        Returns:
            parked가 아닌 ReceiptItem 목록
        """
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM receipts WHERE parked = 0 ORDER BY created_at ASC, id ASC LIMIT ?",
                (limit,)
            )
            rows = await cursor.fetchall()
        return [_row_to_item(row) for row in rows]

    async def list_parked(self) -> List[ReceiptItem]:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM receipts WHERE parked = 1 ORDER BY created_at ASC, id ASC"
            )
            rows = await cursor.fetchall()
        return [_row_to_item(row) for row in rows]

    async def mark_attempt(self, oid: int, error: Optional[str] = None) -> None:
        """
        시도 횟수를 증가시키고 마지막 오류를 기록합니다.

        Args:
            oid: Outbox 항목 ID
            error: 실패 사유
        """
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "UPDATE receipts SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                (error, oid)
            )
            await db.commit()

    async def park(self, oid: int) -> None:
        """더 이상 재시도하지 않도록 항목을 보류합니다."""
        async with aiosqlite.connect(self.path) as db:
            await db.execute("UPDATE receipts SET parked = 1 WHERE id = ?", (oid,))
            await db.commit()
        log.error("receipt parked after repeated completion failures", oid=oid)

    async def delete(self, oid: int) -> None:
        """
        항목을 삭제합니다 (완료 처리에 성공한 경우).

        Args:
            oid: 삭제할 Outbox 항목 ID
        """
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM receipts WHERE id = ?", (oid,))
            await db.commit()

    async def get_count(self, parked: bool = False) -> int:
        """
        현재 저장된 항목 수를 반환합니다.

        Args:
            parked: True면 보류된 항목 수

        Returns:
            항목 수
        """
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM receipts WHERE parked = ?", (1 if parked else 0,))
            result = await cursor.fetchone()
            return result[0] if result else 0
