"""
RuleEngine 모듈 단위 테스트

이 모듈은 엔진 진입점(수집, 조회, 실행, 배치, 거부, 잔액 점검)을 테스트합니다.
"""

import pytest
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from conftest import OPERATOR
from geolink.core.errors import ValidationError
from geolink.core.models import BalancePolicy, DwellPolicy, QuorumPolicy, RateLimitPolicy
from geolink.orchestrators.engine import parse_key

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def raw_match(rule_id=5, pk="W1", update_id=42, **extra):
    data = {
        "rule_id": rule_id,
        "matched_public_key": pk,
        "update_id": update_id,
        "latitude": 37.5665,
        "longitude": 126.978,
        "matched_at": "2025-01-01T12:00:00Z",
    }
    data.update(extra)
    return data


class TestParseKey:
    """식별 키 파싱 테스트"""

    def test_with_update_id(self):
        key = parse_key({"rule_id": "5", "matched_public_key": "W1", "update_id": 42, "position": 3})
        assert key.as_string() == "5_W1_42"
        assert key.position is None

    def test_with_position(self):
        assert parse_key({"rule_id": 5, "matched_public_key": "W1", "position": 2}).as_string() == "5_W1_pos2"

    @pytest.mark.parametrize("data", [{}, {"rule_id": "x", "matched_public_key": "W"},
                                      {"rule_id": 5, "matched_public_key": "W", "update_id": "abc"},
                                      {"rule_id": 5, "matched_public_key": ""}])
    def test_malformed(self, data):
        with pytest.raises(ValidationError) as exc_info:
            parse_key(data)
        assert exc_info.value.reason == "malformed_identity"


class TestIngest:
    """매치 수집 테스트"""

    @pytest.mark.asyncio
    async def test_admitted_event_becomes_pending(self, engine_factory, make_rule):
        env = await engine_factory(rules=[make_rule()])

        decision = await env.engine.ingest(raw_match())

        assert decision.admitted
        pending = await env.engine.list_pending()
        assert [e.key.as_string() for e in pending] == ["5_W1_42"]

    @pytest.mark.asyncio
    async def test_duplicate_ingest_is_idempotent(self, engine_factory, make_rule):
        env = await engine_factory(rules=[make_rule()])

        await env.engine.ingest(raw_match())
        await env.engine.ingest(raw_match())

        assert len(await env.engine.list_pending()) == 1

    @pytest.mark.asyncio
    async def test_inactive_rule_held(self, engine_factory, make_rule):
        env = await engine_factory(rules=[make_rule(is_active=False)])

        decision = await env.engine.ingest(raw_match())

        assert not decision
        assert decision.reason == "rule_inactive"
        assert await env.engine.list_pending() == []

    @pytest.mark.asyncio
    async def test_rate_limit_uses_history(self, engine_factory, make_rule):
        rule = make_rule(rate_limit=RateLimitPolicy(max_executions_per_public_key=1,
                                                    execution_time_window_seconds=3600))
        env = await engine_factory(rules=[rule])
        await env.history.record(5, "W1", NOW - timedelta(minutes=10))

        held = await env.engine.ingest(raw_match(), now=NOW)
        other = await env.engine.ingest(raw_match(pk="W2", update_id=43), now=NOW)

        assert held.reason == "rate_limit_exceeded"
        assert other.admitted

    @pytest.mark.asyncio
    async def test_dwell_requirement(self, engine_factory, make_rule):
        rule = make_rule(dwell=DwellPolicy(min_location_duration_seconds=60))
        env = await engine_factory(rules=[rule])

        short = await env.engine.ingest(raw_match(location_duration_seconds=10), now=NOW)
        long_enough = await env.engine.ingest(raw_match(update_id=43, location_duration_seconds=90), now=NOW)

        assert short.reason == "insufficient_location_duration"
        assert long_enough.admitted

    @pytest.mark.asyncio
    async def test_unknown_rule(self, engine_factory):
        env = await engine_factory()

        with pytest.raises(KeyError):
            await env.engine.ingest(raw_match(rule_id=99))


class TestExecuteAndReject:
    """실행 및 거부 테스트"""

    @pytest.mark.asyncio
    async def test_execute_pending_event(self, engine_factory, make_rule, make_contract, credentials):
        env = await engine_factory(rules=[make_rule()], contracts=[make_contract()])
        await env.engine.ingest(raw_match())
        key = parse_key(raw_match())

        outcome = await env.engine.execute(key, credentials)

        assert outcome.transaction_hash == "tx-1"
        assert key not in env.engine.pending
        assert await env.engine.list_pending() == []
        assert len(await env.engine.list_completed()) == 1

    @pytest.mark.asyncio
    async def test_match_without_update_id_fires_again_after_completion(self, engine_factory, make_rule,
                                                                        make_contract, credentials):
        """update_id 없는 매치도 완료 후 새 관측이면 다시 대기 목록에 들어감"""
        env = await engine_factory(rules=[make_rule()], contracts=[make_contract()])
        await env.engine.ingest(raw_match(update_id=None))
        await env.engine.execute(parse_key(raw_match(update_id=None)), credentials)

        decision = await env.engine.ingest(raw_match(update_id=None, matched_at="2025-01-02T12:00:00Z"))

        assert decision.admitted
        pending = await env.engine.list_pending()
        assert [e.key.as_string() for e in pending] == ["5_W1_pos0"]
        assert pending[0].matched_at == datetime(2025, 1, 2, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_rate_limit_enforced_at_execution(self, engine_factory, make_rule, make_contract, credentials):
        """같은 구간에 대기 중이던 두 번째 매치는 실행 시점에 거부"""
        rule = make_rule(rate_limit=RateLimitPolicy(max_executions_per_public_key=1,
                                                    execution_time_window_seconds=3600))
        env = await engine_factory(rules=[rule], contracts=[make_contract()])
        await env.engine.ingest(raw_match(update_id=1))
        await env.engine.ingest(raw_match(update_id=2))

        await env.engine.execute(parse_key(raw_match(update_id=1)), credentials)
        with pytest.raises(ValidationError) as exc_info:
            await env.engine.execute(parse_key(raw_match(update_id=2)), credentials)

        assert exc_info.value.reason == "rate_limit_exceeded"
        assert len(env.execution.calls) == 1
        assert [e.update_id for e in await env.engine.list_pending()] == [2]

    @pytest.mark.asyncio
    async def test_rate_limit_enforced_within_batch(self, engine_factory, make_rule, make_contract, credentials):
        rule = make_rule(rate_limit=RateLimitPolicy(max_executions_per_public_key=1,
                                                    execution_time_window_seconds=3600))
        env = await engine_factory(rules=[rule], contracts=[make_contract()])
        await env.engine.ingest(raw_match(update_id=1))
        await env.engine.ingest(raw_match(update_id=2))

        report = await env.engine.execute_batch(credentials, keys=[parse_key(raw_match(update_id=1)),
                                                                   parse_key(raw_match(update_id=2))])

        assert report.success_count == 1
        assert report.fail_count == 1
        assert report.per_item_errors[0].reason == "rate_limit_exceeded"
        assert len(env.execution.calls) == 1

    @pytest.mark.asyncio
    async def test_execute_unknown_key(self, engine_factory, credentials):
        env = await engine_factory()

        with pytest.raises(KeyError):
            await env.engine.execute(parse_key(raw_match()), credentials)

    @pytest.mark.asyncio
    async def test_reject(self, engine_factory, make_rule):
        env = await engine_factory(rules=[make_rule()])
        await env.engine.ingest(raw_match())
        key = parse_key(raw_match())
        env.engine.selection.select(key)

        assert await env.engine.reject(key) is True

        assert key not in env.engine.selection
        assert await env.engine.list_pending() == []
        rejected = await env.engine.list_rejected()
        assert [e.key.as_string() for e in rejected] == ["5_W1_42"]


class TestBatch:
    """엔진 배치 실행 테스트"""

    @pytest.mark.asyncio
    async def test_batch_runs_selection(self, engine_factory, make_rule, make_contract, credentials):
        env = await engine_factory(rules=[make_rule()], contracts=[make_contract()])
        for update_id in (1, 2, 3):
            await env.engine.ingest(raw_match(update_id=update_id))
        await env.engine.refresh_pending()
        env.engine.selection.select_all(env.engine.pending.keys())

        report = await env.engine.execute_batch(credentials)

        assert report.success_count == 3
        assert len(env.engine.selection) == 0
        assert env.engine.batch_in_flight is False
        assert await env.engine.list_pending() == []

    @pytest.mark.asyncio
    async def test_stale_key_skipped(self, engine_factory, make_rule, make_contract, credentials):
        env = await engine_factory(rules=[make_rule()], contracts=[make_contract()])
        await env.engine.ingest(raw_match())

        report = await env.engine.execute_batch(credentials, keys=[parse_key(raw_match(update_id=999)),
                                                                   parse_key(raw_match())])

        assert report.success_count == 1
        assert report.fail_count == 0

    @pytest.mark.asyncio
    async def test_missing_rule_reported_per_item(self, engine_factory, make_rule, make_contract, make_event,
                                                  credentials):
        env = await engine_factory(rules=[make_rule()], contracts=[make_contract()])
        await env.engine.ingest(raw_match())
        orphan = make_event(rule_id=9, pk="W9", update_id=7)
        await env.lifecycle.mark_pending(orphan)
        await env.engine.refresh_pending()

        report = await env.engine.execute_batch(credentials, keys=[orphan.key, parse_key(raw_match())])

        assert report.success_count == 1
        assert report.fail_count == 1
        assert report.per_item_errors[0].reason == "unknown_rule"
        assert orphan.key in env.engine.pending

    @pytest.mark.asyncio
    async def test_concurrent_batch_rejected(self, engine_factory, credentials):
        env = await engine_factory()
        env.engine.batch_in_flight = True

        with pytest.raises(ValidationError) as exc_info:
            await env.engine.execute_batch(credentials)
        assert exc_info.value.reason == "batch_in_flight"

    @pytest.mark.asyncio
    async def test_cancel_without_batch(self, engine_factory):
        env = await engine_factory()
        assert env.engine.cancel_batch() is False


class TestRefresh:
    """새로고침 테스트"""

    @pytest.mark.asyncio
    async def test_poll_skipped_while_batch_in_flight(self, engine_factory):
        """배치 실행 중에는 백그라운드 새로고침을 건너뜀"""
        env = await engine_factory()
        env.engine.refresh_pending = AsyncMock(return_value=[])
        env.engine.batch_in_flight = True

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(env.engine.poll_forever(), timeout=0.05)
        env.engine.refresh_pending.assert_not_called()

        env.engine.batch_in_flight = False
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(env.engine.poll_forever(), timeout=0.05)
        assert env.engine.refresh_pending.await_count >= 1

    @pytest.mark.asyncio
    async def test_selection_survives_refresh(self, engine_factory, make_rule):
        env = await engine_factory(rules=[make_rule()])
        await env.engine.ingest(raw_match(update_id=1))
        await env.engine.ingest(raw_match(update_id=2))
        await env.engine.refresh_pending()
        first, second = parse_key(raw_match(update_id=1)), parse_key(raw_match(update_id=2))
        env.engine.selection.select_all([first, second])

        await env.lifecycle.reject(5, "W1", 1)
        await env.engine.refresh_pending()

        assert env.engine.selection.keys() == [second]

    @pytest.mark.asyncio
    async def test_refresh_drains_outbox_first(self, engine_factory, make_rule):
        env = await engine_factory(rules=[make_rule()])
        await env.engine.ingest(raw_match())
        await env.outbox.enqueue(5, "W1", 42, "tx-late")

        pending = await env.engine.refresh_pending()

        assert pending == []
        assert await env.outbox.get_count() == 0
        assert [r.transaction_hash for r in await env.engine.list_completed()] == ["tx-late"]


class TestQuorumAndBalance:
    """쿼럼 및 잔액 점검 테스트"""

    @pytest.mark.asyncio
    async def test_check_quorum(self, engine_factory, make_rule):
        rule = make_rule(quorum=QuorumPolicy(required_wallet_public_keys=frozenset({"A", "B", "C"}),
                                             minimum_wallet_count=2))
        env = await engine_factory(rules=[rule], wallets={5: {"A", "C", "X"}})

        status = await env.engine.check_quorum(5)

        assert status.met
        assert status.in_range == frozenset({"A", "C"})
        assert status.out_of_range == frozenset({"B"})

    @pytest.mark.asyncio
    async def test_empty_quorum_always_met(self, engine_factory, make_rule):
        env = await engine_factory(rules=[make_rule()])

        status = await env.engine.check_quorum(5)

        assert status.met
        assert status.message == "None required"

    @pytest.mark.asyncio
    async def test_sweep_deactivates_below_threshold(self, engine_factory, make_rule, make_contract):
        policy = BalancePolicy(auto_deactivate_on_balance_threshold=True, balance_threshold_xlm=5.0)
        rules = [
            make_rule(rule_id=1, balance=policy),
            make_rule(rule_id=2, balance=policy, target_wallet_public_key="GRICH"),
            make_rule(rule_id=3, balance=policy, target_wallet_public_key="GBROKEN"),
            make_rule(rule_id=4),
        ]
        balances = {OPERATOR: 5.0, "GRICH": 100.0, "GBROKEN": RuntimeError("horizon down")}
        env = await engine_factory(rules=rules, contracts=[make_contract()], balances=balances)

        deactivated = await env.engine.sweep_balances()

        assert deactivated == [1]
        assert env.rules.deactivated == [1]
        assert env.rules.rules[1].is_active is False

    @pytest.mark.asyncio
    async def test_sweep_uses_vault_balance(self, engine_factory, make_rule, make_contract):
        policy = BalancePolicy(auto_deactivate_on_balance_threshold=True, balance_threshold_xlm=1.0,
                               use_smart_wallet_balance=True)
        env = await engine_factory(rules=[make_rule(balance=policy)],
                                   contracts=[make_contract(smart_wallet_contract_id="CVAULT")],
                                   balances={OPERATOR: 50.0})

        assert await env.engine.sweep_balances() == []
        assert env.rules.balance_queries == [(OPERATOR, None, "CVAULT")]
