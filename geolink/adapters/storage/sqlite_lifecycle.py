"""
SQLite-based rule lifecycle store for the GeoLink rule engine.

Each match observation is stored once under its observation key (update_id,
or the match time when there is none) and moves from pending to completed
or rejected. Positional keys are assigned when pending events are listed. Completion reports are deduplicated in a
separate table keyed by the completion dedup key.
"""

import aiosqlite
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from geolink.core.errors import ValidationError
from geolink.core.models import CompletionRecord, MatchEvent, completion_key
from geolink.observability.logging_setup import get_logger

log = get_logger("geolink.lifecycle")

# SQLite 스키마
SCHEMA = """
CREATE TABLE IF NOT EXISTS match_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_key TEXT NOT NULL UNIQUE,
    rule_id INTEGER NOT NULL,
    matched_public_key TEXT NOT NULL,
    update_id INTEGER,
    matched_at TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'pending',
    transaction_hash TEXT,
    state_changed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_match_rule_key ON match_events(rule_id, matched_public_key, state);
CREATE TABLE IF NOT EXISTS completions (
    dedup_key TEXT PRIMARY KEY,
    rule_id INTEGER NOT NULL,
    matched_public_key TEXT NOT NULL,
    update_id INTEGER,
    transaction_hash TEXT,
    completed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_completions_at ON completions(completed_at);
"""


def _check_identity(rule_id, matched_public_key) -> None:
    if not isinstance(rule_id, int) or isinstance(rule_id, bool) or rule_id < 1:
        raise ValidationError(f"malformed rule_id: {rule_id!r}", reason="malformed_identity")
    if not isinstance(matched_public_key, str) or not matched_public_key:
        raise ValidationError(f"malformed matched_public_key: {matched_public_key!r}",
                              reason="malformed_identity")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteLifecycleStore:
    """SQLite 기반 규칙 수명 주기 저장소"""

    def __init__(self, path: str):
        """
        초기화합니다.

        Args:
            path: SQLite 데이터베이스 파일 경로
        """
        self.path = path
        log.info(f"SQLiteLifecycleStore 초기화: {path}")

    async def init(self) -> None:
        """데이터베이스를 초기화합니다."""
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(SCHEMA)
            await db.commit()
        log.info(f"SQLiteLifecycleStore 스키마 초기화 완료: {self.path}")

    async def mark_pending(self, event: MatchEvent) -> bool:
        """
        매치 이벤트를 대기 상태로 추가합니다.

        같은 관측 키가 이미 있으면 (상태와 무관하게) 아무것도 하지 않습니다.
        update_id가 없는 매치는 매치 시각으로 구분되므로, 종료된 매치 뒤의
        새 매치는 다시 대기 상태가 됩니다.

        Returns:
            새로 추가되었으면 True
        """
        _check_identity(event.rule_id, event.matched_public_key)
        key = event.observation_key
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO match_events "
                "(event_key, rule_id, matched_public_key, update_id, matched_at, payload) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (key, event.rule_id, event.matched_public_key, event.update_id,
                 event.matched_at.isoformat(), event.model_dump_json())
            )
            await db.commit()
            added = cursor.rowcount == 1
        if added:
            log.debug("match event pending", key=key)
        return added

    async def _select_target(self, db, rule_id: int, matched_public_key: str,
                             update_id: Optional[int]):
        """
        전환 대상 이벤트를 찾습니다.

        update_id가 있으면 전체 식별 튜플로, 없으면 가장 최근 매치로 찾습니다.
        """
        if update_id is not None:
            cursor = await db.execute(
                "SELECT id, state FROM match_events "
                "WHERE rule_id = ? AND matched_public_key = ? AND update_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (rule_id, matched_public_key, update_id)
            )
        else:
            cursor = await db.execute(
                "SELECT id, state FROM match_events "
                "WHERE rule_id = ? AND matched_public_key = ? AND state = 'pending' "
                "ORDER BY matched_at DESC, id DESC LIMIT 1",
                (rule_id, matched_public_key)
            )
        return await cursor.fetchone()

    async def complete(self, rule_id: int, matched_public_key: str,
                       update_id: Optional[int], transaction_hash: Optional[str]) -> bool:
        """
        매치 이벤트를 완료 상태로 전환하고 완료 기록을 남깁니다.

        Args:
            rule_id: 규칙 ID
            matched_public_key: 매치된 지갑 공개키
            update_id: 위치 업데이트 ID (없으면 가장 최근 매치)
            transaction_hash: 트랜잭션 해시 (시뮬레이션이면 None)

        Returns:
            대기 중인 이벤트가 전환되었으면 True
        """
        _check_identity(rule_id, matched_public_key)
        now = _now()
        dedup = completion_key(rule_id, transaction_hash, update_id, matched_public_key)

        async with aiosqlite.connect(self.path) as db:
            row = await self._select_target(db, rule_id, matched_public_key, update_id)
            transitioned = False
            if row is not None and row[1] == "rejected":
                # 종료 상태는 바꾸지 않음
                log.info("completion ignored for rejected event", rule_id=rule_id, update_id=update_id)
                return False
            if row is not None and row[1] == "pending":
                await db.execute(
                    "UPDATE match_events SET state = 'completed', transaction_hash = ?, state_changed_at = ? "
                    "WHERE id = ? AND state = 'pending'",
                    (transaction_hash, now, row[0])
                )
                transitioned = True

            await db.execute(
                "INSERT OR IGNORE INTO completions "
                "(dedup_key, rule_id, matched_public_key, update_id, transaction_hash, completed_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (dedup, rule_id, matched_public_key, update_id, transaction_hash, now)
            )
            await db.commit()

        log.info("match event completed", key=dedup, transitioned=transitioned)
        return transitioned

    async def reject(self, rule_id: int, matched_public_key: str,
                     update_id: Optional[int] = None) -> bool:
        """
        매치 이벤트를 거부 상태로 전환합니다.

        update_id가 없으면 해당 규칙/지갑의 대기 이벤트를 모두 거부합니다.

        Returns:
            거부된 이벤트가 있으면 True
        """
        _check_identity(rule_id, matched_public_key)
        async with aiosqlite.connect(self.path) as db:
            if update_id is not None:
                cursor = await db.execute(
                    "UPDATE match_events SET state = 'rejected', state_changed_at = ? "
                    "WHERE rule_id = ? AND matched_public_key = ? AND update_id = ? AND state = 'pending'",
                    (_now(), rule_id, matched_public_key, update_id)
                )
            else:
                cursor = await db.execute(
                    "UPDATE match_events SET state = 'rejected', state_changed_at = ? "
                    "WHERE rule_id = ? AND matched_public_key = ? AND state = 'pending'",
                    (_now(), rule_id, matched_public_key)
                )
            await db.commit()
            rejected = cursor.rowcount > 0
        log.info("match event rejected", rule_id=rule_id, update_id=update_id, rejected=rejected)
        return rejected

    async def _list_events(self, state: str) -> List[MatchEvent]:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "SELECT payload FROM match_events WHERE state = ? ORDER BY matched_at ASC, id ASC",
                (state,)
            )
            rows = await cursor.fetchall()
        # update_id가 없는 이벤트는 규칙/지갑별 목록 순서로 위치를 부여
        events: List[MatchEvent] = []
        positions: Dict[Tuple[int, str], int] = {}
        for row in rows:
            event = MatchEvent.model_validate_json(row[0])
            update = {"state": state}
            if event.update_id is None:
                slot = (event.rule_id, event.matched_public_key)
                update["position"] = positions.get(slot, 0)
                positions[slot] = update["position"] + 1
            events.append(event.model_copy(update=update))
        return events

    async def list_pending(self) -> List[MatchEvent]:
        return await self._list_events("pending")

    async def list_rejected(self) -> List[MatchEvent]:
        return await self._list_events("rejected")

    async def list_completed(self) -> List[CompletionRecord]:
        """완료 목록 (중복 제거 키당 하나)"""
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "SELECT rule_id, matched_public_key, update_id, transaction_hash, completed_at "
                "FROM completions ORDER BY completed_at ASC"
            )
            rows = await cursor.fetchall()
        return [
            CompletionRecord(
                rule_id=row[0],
                matched_public_key=row[1],
                update_id=row[2],
                transaction_hash=row[3],
                completed_at=datetime.fromisoformat(row[4]),
            )
            for row in rows
        ]

    async def get_count(self, state: str = "pending") -> int:
        """
        상태별 이벤트 수를 반환합니다.

        Returns:
            항목 수
        """
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM match_events WHERE state = ?", (state,))
            result = await cursor.fetchone()
            return result[0] if result else 0
