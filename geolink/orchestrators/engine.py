"""
Rule engine facade.

Holds the pending-event cache, the operator's selection and the
cancellation token of the batch in flight, and exposes the operations
callers use: list, ingest, check quorum, execute, execute batch, reject.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from geolink.common.cancellation import CancellationToken
from geolink.core import normalize
from geolink.core.errors import EngineError, ValidationError
from geolink.core.gate import admit
from geolink.core.models import (
    BatchItemError, BatchReport, CompletionRecord, Credentials, ExecutionOutcome, GateDecision,
    MatchEvent, MatchKey, QuorumStatus, RuleMatch,
)
from geolink.core.quorum import evaluate
from geolink.observability import metrics
from geolink.observability.logging_setup import get_logger
from geolink.ports.balance import BalancePort
from geolink.ports.history import ExecutionHistoryPort
from geolink.ports.ingest import MatchIngestPort
from geolink.ports.lifecycle import LifecycleStorePort
from geolink.ports.rules import RulePort
from .batch import BatchOrchestrator, SelectionSet
from .executor import RuleExecutor
from .reconciler import ReceiptReconciler

log = get_logger("geolink.engine")


def parse_key(data: Mapping[str, Any]) -> MatchKey:
    """
    요청 데이터에서 매치 이벤트 식별 키를 만듭니다.

    Raises:
        ValidationError: rule_id 또는 matched_public_key가 없는 경우
    """
    try:
        rule_id = int(data["rule_id"])
        public_key = str(data["matched_public_key"])
        update_id = data.get("update_id")
        update_id = int(update_id) if update_id is not None else None
        position = None if update_id is not None else int(data.get("position") or 0)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"malformed event key: {e}", reason="malformed_identity") from e
    if not public_key:
        raise ValidationError("matched_public_key is required", reason="malformed_identity")
    return MatchKey(rule_id, public_key, update_id, position)


class RuleEngine:
    """규칙 실행 엔진 (호출자용 진입점)"""

    def __init__(self,
                 rules: RulePort,
                 lifecycle: LifecycleStorePort,
                 executor: RuleExecutor,
                 batch: BatchOrchestrator,
                 reconciler: ReceiptReconciler,
                 *,
                 history: Optional[ExecutionHistoryPort] = None,
                 balance: Optional[BalancePort] = None,
                 poll_interval: float = 10.0,
                 operator_identity: Optional[str] = None):
        """
        초기화합니다.

        Args:
            rules: 규칙 저장소 포트
            lifecycle: 수명 주기 저장소
            executor: 단일 규칙 실행기
            batch: 배치 오케스트레이터
            reconciler: 영수증 재처리기
            history: 실행 기록 (레이트 게이트)
            balance: 잔액 조회 포트 (잔액 기준 비활성화)
            poll_interval: 대기 목록 새로고침 주기 (초)
            operator_identity: 규칙에 대상 지갑이 없을 때 잔액을 확인할 지갑
        """
        self.rules = rules
        self.lifecycle = lifecycle
        self.executor = executor
        self.batch = batch
        self.reconciler = reconciler
        self.history = history
        self.balance = balance
        self.poll_interval = poll_interval
        self.operator_identity = operator_identity

        self.pending: Dict[MatchKey, MatchEvent] = {}
        self.selection = SelectionSet()
        self.batch_in_flight = False
        self._cancel: Optional[CancellationToken] = None

    # ---- 조회 ----

    async def refresh_pending(self) -> List[MatchEvent]:
        """
        영수증을 먼저 재처리한 뒤 대기 목록을 새로고침합니다.

        사라진 이벤트는 선택에서 제거되고 나머지 선택은 유지됩니다.
        """
        try:
            await self.reconciler.drain()
        except Exception as e:
            log.warning(f"영수증 재처리 실패: {e}")

        return await self._reload_pending()

    async def _reload_pending(self) -> List[MatchEvent]:
        events = await self.lifecycle.list_pending()
        self.pending = {e.key: e for e in events}
        removed = self.selection.prune(self.pending.keys())
        if removed:
            log.debug("selection pruned", removed=[k.as_string() for k in removed])
        metrics.pending_events.set(len(self.pending))
        return events

    async def list_pending(self) -> List[MatchEvent]:
        return await self.refresh_pending()

    async def list_completed(self) -> List[CompletionRecord]:
        return await self.lifecycle.list_completed()

    async def list_rejected(self) -> List[MatchEvent]:
        return await self.lifecycle.list_rejected()

    async def check_quorum(self, rule_id: int) -> QuorumStatus:
        """규칙의 쿼럼 충족 여부를 현재 범위 안의 지갑으로 평가합니다."""
        rule = await self.rules.get_rule(rule_id)
        if rule.quorum.is_empty:
            return evaluate(rule.quorum, ())
        wallets = await self.rules.wallets_in_range(rule_id)
        return evaluate(rule.quorum, wallets)

    # ---- 수집 ----

    async def ingest(self, raw: Mapping[str, Any], *, now: Optional[datetime] = None) -> GateDecision:
        """
        매치 이벤트를 게이트에 통과시킨 뒤 대기 목록에 추가합니다.

        Args:
            raw: 원시 매치 데이터
            now: 평가 시각 (기본값: 현재 UTC)

        Returns:
            게이트 판단 결과
        """
        event = normalize.to_match_event(raw)
        rule = await self.rules.get_rule(event.rule_id)
        now = now or datetime.now(timezone.utc)

        history: List[datetime] = []
        if self.history is not None and rule.rate_limit.enabled:
            since = now - timedelta(seconds=rule.rate_limit.execution_time_window_seconds)
            history = await self.history.timestamps(rule.id, event.matched_public_key, since)

        decision = admit(rule, event.matched_public_key, history,
                         dwell_seconds=event.location_duration_seconds, now=now)
        if not decision:
            metrics.matches_held.labels(reason=decision.reason).inc()
            log.info("match event held", key=event.key.as_string(), reason=decision.reason)
            return decision

        if await self.lifecycle.mark_pending(event):
            metrics.matches_admitted.inc()
            if event.update_id is None:
                # 위치 기반 키는 저장소 목록 순서로 정해짐
                await self._reload_pending()
            else:
                self.pending[event.key] = event
                metrics.pending_events.set(len(self.pending))
        return decision

    async def run_ingest(self, ingest: MatchIngestPort) -> None:
        """수집 포트에서 들어오는 매치를 계속 처리합니다."""
        async for raw in ingest.recv():
            try:
                await self.ingest(raw)
            except EngineError as e:
                log.warning(f"매치 이벤트 거부: {e.message}", reason=e.reason)
            except KeyError as e:
                log.warning(f"알 수 없는 규칙의 매치 이벤트: {e}")

    # ---- 실행 ----

    def _lookup(self, key: MatchKey) -> MatchEvent:
        event = self.pending.get(key)
        if event is None:
            raise KeyError(key.as_string())
        return event

    async def _to_match(self, event: MatchEvent) -> RuleMatch:
        rule = await self.rules.get_rule(event.rule_id)
        contract = await self.rules.get_contract(rule.contract_id)
        return RuleMatch(rule=rule, contract=contract, event=event)

    def _forget(self, key: MatchKey) -> None:
        self.pending.pop(key, None)
        self.selection.deselect(key)
        metrics.pending_events.set(len(self.pending))

    async def execute(self, key: MatchKey, credentials: Credentials) -> ExecutionOutcome:
        """
        대기 중인 매치 이벤트 하나를 실행합니다.

        Raises:
            KeyError: 대기 목록에 없는 키
            ValidationError, AuthorizationError, SubmissionError
        """
        event = self._lookup(key)
        match = await self._to_match(event)
        outcome = await self.executor.execute(match, credentials)
        self._forget(key)
        return outcome

    async def execute_batch(self, credentials: Credentials,
                            keys: Optional[List[MatchKey]] = None) -> BatchReport:
        """
        선택된 (또는 지정된) 매치 이벤트를 배치로 실행합니다.

        실행 중에는 백그라운드 새로고침이 멈춥니다.
        """
        if self.batch_in_flight:
            raise ValidationError("a batch execution is already running", reason="batch_in_flight")

        keys = list(keys) if keys is not None else self.selection.keys()
        self.batch_in_flight = True
        self._cancel = CancellationToken()
        metrics.batch_in_flight.set(1)
        try:
            matches: List[RuleMatch] = []
            early: List[BatchItemError] = []
            for key in keys:
                event = self.pending.get(key)
                if event is None:
                    # 다른 경로에서 이미 종료된 이벤트
                    log.info("skipping stale batch key", key=key.as_string())
                    continue
                try:
                    matches.append(await self._to_match(event))
                except EngineError as e:
                    early.append(BatchItemError(key=key.as_string(), rule_id=key.rule_id,
                                                category=e.category, reason=e.reason, message=e.message))
                except KeyError:
                    early.append(BatchItemError(key=key.as_string(), rule_id=key.rule_id,
                                                category="validation", reason="unknown_rule",
                                                message=f"rule {key.rule_id} not found"))

            report = await self.batch.execute_batch(matches, credentials, cancel=self._cancel)
        finally:
            self.batch_in_flight = False
            self._cancel = None
            metrics.batch_in_flight.set(0)

        if early:
            report.fail_count += len(early)
            report.per_item_errors = early + report.per_item_errors
        for m in matches:
            if m.key.as_string() in report.outcomes:
                self._forget(m.key)
        return report

    def cancel_batch(self, reason: str = "cancelled by operator") -> bool:
        """진행 중인 배치를 취소합니다. 이미 제출된 트랜잭션은 되돌리지 않습니다."""
        if self._cancel is None:
            return False
        self._cancel.cancel(reason)
        log.info("batch cancellation requested", reason=reason)
        return True

    async def reject(self, key: MatchKey) -> bool:
        """매치 이벤트를 거부합니다 (되돌릴 수 없음)."""
        rejected = await self.lifecycle.reject(key.rule_id, key.matched_public_key, key.update_id)
        self._forget(key)
        return rejected

    # ---- 백그라운드 ----

    async def poll_forever(self) -> None:
        """대기 목록을 주기적으로 새로고침합니다 (배치 실행 중에는 건너뜀)."""
        while True:
            if not self.batch_in_flight:
                try:
                    await self.refresh_pending()
                except Exception as e:
                    log.warning(f"대기 목록 새로고침 실패: {e}")
            await asyncio.sleep(self.poll_interval)

    async def sweep_balances(self) -> List[int]:
        """
        잔액이 임계값 이하인 규칙을 비활성화합니다 (최선 노력).

        Returns:
            비활성화된 규칙 ID 목록
        """
        if self.balance is None:
            return []

        deactivated: List[int] = []
        for rule in await self.rules.list_rules():
            policy = rule.balance
            if not rule.is_active or not policy.enabled:
                continue
            identity = rule.target_wallet_public_key or self.operator_identity
            if not identity:
                continue
            try:
                vault_id = None
                if policy.use_smart_wallet_balance:
                    contract = await self.rules.get_contract(rule.contract_id)
                    vault_id = contract.smart_wallet_contract_id
                value = await self.balance.get_balance(identity, asset=policy.balance_check_asset_address,
                                                       smart_wallet_contract_id=vault_id)
            except Exception as e:
                log.warning(f"잔액 조회 실패: rule:{rule.id} error:{e}")
                continue

            if value <= policy.balance_threshold_xlm:
                await self.rules.deactivate_rule(rule.id)
                metrics.rules_deactivated.inc()
                deactivated.append(rule.id)
                log.info("rule deactivated by balance threshold", rule_id=rule.id, balance=value,
                         threshold=policy.balance_threshold_xlm)
        return deactivated
