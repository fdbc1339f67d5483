"""
Storage Adapter 모듈 단위 테스트

이 모듈은 SQLite 기반 저장소 어댑터들의 기능을 테스트합니다.
"""

import pytest
import os
import time
from datetime import datetime, timedelta, timezone

from geolink.adapters.storage import SQLiteExecutionHistory, SQLiteLifecycleStore, SQLiteOutbox
from geolink.core.errors import ValidationError


class TestSQLiteLifecycleStore:
    """SQLite 수명 주기 저장소 테스트"""

    @pytest.mark.asyncio
    async def test_init_schema(self, temp_db_path):
        store = SQLiteLifecycleStore(temp_db_path)
        await store.init()

        assert os.path.exists(store.path)
        assert await store.get_count("pending") == 0

    @pytest.mark.asyncio
    async def test_mark_pending_idempotent(self, lifecycle_store, make_event):
        """같은 식별 키의 중복 추가는 무시"""
        event = make_event()

        assert await lifecycle_store.mark_pending(event) is True
        assert await lifecycle_store.mark_pending(event) is False

        pending = await lifecycle_store.list_pending()
        assert len(pending) == 1
        assert pending[0].key == event.key
        assert pending[0].location == event.location

    @pytest.mark.asyncio
    async def test_new_match_without_update_id_after_completion(self, lifecycle_store, make_event):
        """update_id 없는 매치가 종료된 뒤 새 매치는 다시 대기 상태"""
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        first = make_event(pk="W1", update_id=None, matched_at=base)
        later = make_event(pk="W1", update_id=None, matched_at=base + timedelta(days=1))

        assert await lifecycle_store.mark_pending(first) is True
        assert await lifecycle_store.complete(5, "W1", None, "tx1") is True
        assert await lifecycle_store.mark_pending(first) is False
        assert await lifecycle_store.mark_pending(later) is True

        pending = await lifecycle_store.list_pending()
        assert [e.matched_at for e in pending] == [later.matched_at]
        assert pending[0].key.as_string() == "5_W1_pos0"

    @pytest.mark.asyncio
    async def test_distinct_matches_without_update_id_get_positions(self, lifecycle_store, make_event):
        """동시에 대기 중인 서로 다른 매치는 위치로 구분"""
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        await lifecycle_store.mark_pending(make_event(pk="W1", update_id=None, matched_at=base))
        await lifecycle_store.mark_pending(make_event(pk="W1", update_id=None, matched_at=base + timedelta(minutes=1)))
        await lifecycle_store.mark_pending(make_event(pk="W2", update_id=None, matched_at=base))

        keys = [e.key.as_string() for e in await lifecycle_store.list_pending()]

        assert sorted(keys) == ["5_W1_pos0", "5_W1_pos1", "5_W2_pos0"]

    @pytest.mark.asyncio
    async def test_complete_twice_single_record(self, lifecycle_store, make_event):
        """같은 인자로 두 번 완료해도 완료 기록은 하나"""
        await lifecycle_store.mark_pending(make_event(rule_id=5, pk="W1", update_id=42))

        first = await lifecycle_store.complete(5, "W1", 42, "abc123")
        second = await lifecycle_store.complete(5, "W1", 42, "abc123")

        assert first is True
        assert second is False
        completed = await lifecycle_store.list_completed()
        assert [r.dedup_key for r in completed] == ["5_abc123_42_W1"]
        assert await lifecycle_store.list_pending() == []

    @pytest.mark.asyncio
    async def test_complete_without_update_id_targets_most_recent(self, lifecycle_store, make_event):
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        await lifecycle_store.mark_pending(make_event(pk="W1", update_id=1, matched_at=base))
        await lifecycle_store.mark_pending(make_event(pk="W1", update_id=2, matched_at=base + timedelta(minutes=5)))

        assert await lifecycle_store.complete(5, "W1", None, "tx") is True

        pending = await lifecycle_store.list_pending()
        assert [e.update_id for e in pending] == [1]

    @pytest.mark.asyncio
    async def test_complete_unknown_event_tolerated(self, lifecycle_store):
        """없는 이벤트 완료는 오류가 아니며 완료 기록만 남김"""
        assert await lifecycle_store.complete(9, "W9", 1, "tx9") is False
        assert len(await lifecycle_store.list_completed()) == 1

    @pytest.mark.asyncio
    async def test_rejected_is_terminal(self, lifecycle_store, make_event):
        await lifecycle_store.mark_pending(make_event(pk="W1", update_id=7))

        assert await lifecycle_store.reject(5, "W1", 7) is True
        assert await lifecycle_store.complete(5, "W1", 7, "tx") is False
        assert await lifecycle_store.reject(5, "W1", 7) is False

        rejected = await lifecycle_store.list_rejected()
        assert len(rejected) == 1
        assert rejected[0].state == "rejected"
        assert await lifecycle_store.list_completed() == []

    @pytest.mark.asyncio
    async def test_reject_without_update_id_rejects_all_pending(self, lifecycle_store, make_event):
        await lifecycle_store.mark_pending(make_event(pk="W1", update_id=1))
        await lifecycle_store.mark_pending(make_event(pk="W1", update_id=2))
        await lifecycle_store.mark_pending(make_event(pk="W2", update_id=3))

        assert await lifecycle_store.reject(5, "W1") is True

        assert [e.matched_public_key for e in await lifecycle_store.list_pending()] == ["W2"]
        assert await lifecycle_store.get_count("rejected") == 2

    @pytest.mark.asyncio
    async def test_malformed_identity_rejected(self, lifecycle_store):
        with pytest.raises(ValidationError):
            await lifecycle_store.complete(0, "W1", None, "tx")
        with pytest.raises(ValidationError):
            await lifecycle_store.reject(5, "")


class TestSQLiteOutbox:
    """SQLite 영수증 Outbox 테스트"""

    @pytest.fixture
    def outbox(self, temp_db_path):
        """테스트용 SQLite Outbox"""
        return SQLiteOutbox(temp_db_path)

    @pytest.mark.asyncio
    async def test_enqueue_dedups_receipt(self, outbox):
        await outbox.init()

        first = await outbox.enqueue(5, "W1", 42, "abc123")
        second = await outbox.enqueue(5, "W1", 42, "abc123")

        assert first == second
        assert await outbox.get_count() == 1

    @pytest.mark.asyncio
    async def test_list_ready_oldest_first(self, outbox):
        await outbox.init()
        await outbox.enqueue(1, "W1", None, "tx1")
        await outbox.enqueue(2, "W2", 3, "tx2")

        items = await outbox.list_ready()

        assert [i.transaction_hash for i in items] == ["tx1", "tx2"]
        assert items[1].update_id == 3
        assert items[0].attempts == 0

    @pytest.mark.asyncio
    async def test_mark_attempt_and_park(self, outbox):
        await outbox.init()
        oid = await outbox.enqueue(1, "W1", None, "tx1")

        await outbox.mark_attempt(oid, "timeout")
        items = await outbox.list_ready()
        assert items[0].attempts == 1
        assert items[0].last_error == "timeout"

        await outbox.park(oid)
        assert await outbox.list_ready() == []
        assert await outbox.get_count(parked=True) == 1
        assert (await outbox.list_parked())[0].parked is True

    @pytest.mark.asyncio
    async def test_delete(self, outbox):
        await outbox.init()
        oid = await outbox.enqueue(1, "W1", None, "tx1")

        await outbox.delete(oid)

        assert await outbox.get_count() == 0


class TestSQLiteExecutionHistory:
    """실행 기록 저장소 테스트"""

    @pytest.mark.asyncio
    async def test_timestamps_since(self, temp_db_path):
        history = SQLiteExecutionHistory(temp_db_path)
        await history.init()
        now = datetime.now(timezone.utc)
        await history.record(5, "W1", now - timedelta(hours=2))
        await history.record(5, "W1", now - timedelta(minutes=10))
        await history.record(5, "W2", now)

        stamps = await history.timestamps(5, "W1", now - timedelta(hours=1))

        assert len(stamps) == 1
        assert stamps[0].tzinfo is not None
        assert abs((stamps[0] - (now - timedelta(minutes=10))).total_seconds()) < 1

    @pytest.mark.asyncio
    async def test_gc_removes_expired(self, temp_db_path):
        history = SQLiteExecutionHistory(temp_db_path, retention_sec=60)
        await history.init()
        now = time.time()
        await history.record(1, "W", datetime.fromtimestamp(now - 120, tz=timezone.utc))
        await history.record(1, "W", datetime.fromtimestamp(now, tz=timezone.utc))

        assert await history.gc(now) == 1
