"""
Batch orchestrator for the GeoLink rule engine.

Authorization runs first for the whole batch: one credential selection,
then one passkey proof per distinct signed payload. Execution follows
strictly in order, one submission at a time, with per-item failures
isolated from the rest of the batch.
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Set

from geolink.common.cancellation import CancellationToken
from geolink.core.errors import AuthorizationError, EngineError, ValidationError
from geolink.core.models import (
    AuthMode, AuthTimeout, BatchItemError, BatchReport, Credentials, MatchKey, Proof,
    RuleMatch, WebAuthnProof,
)
from geolink.core.payload import now_ms
from geolink.observability import metrics
from geolink.observability.logging_setup import get_logger, with_context
from .auth_resolver import AuthResolver, prepare, resolve
from .executor import RuleExecutor

log = get_logger("geolink.batch")


class SelectionSet:
    """식별 키 기준 선택 집합 (목록 새로고침에도 유지)"""

    def __init__(self):
        self._keys: Dict[MatchKey, None] = {}

    def select(self, key: MatchKey) -> None:
        self._keys[key] = None

    def deselect(self, key: MatchKey) -> None:
        self._keys.pop(key, None)

    def toggle(self, key: MatchKey) -> bool:
        """선택 상태를 뒤집고 새 상태를 반환합니다."""
        if key in self._keys:
            del self._keys[key]
            return False
        self._keys[key] = None
        return True

    def select_all(self, keys: Iterable[MatchKey]) -> None:
        for key in keys:
            self._keys[key] = None

    def clear(self) -> None:
        self._keys.clear()

    def prune(self, existing: Iterable[MatchKey]) -> List[MatchKey]:
        """
        더 이상 존재하지 않는 키를 선택에서 제거합니다.

        Returns:
            제거된 키 목록
        """
        alive = set(existing)
        removed = [k for k in self._keys if k not in alive]
        for k in removed:
            del self._keys[k]
        return removed

    def keys(self) -> List[MatchKey]:
        return list(self._keys)

    def __contains__(self, key: MatchKey) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)


class BatchOrchestrator:
    """배치 실행 오케스트레이터"""

    def __init__(self, executor: RuleExecutor, resolver: AuthResolver, *, pause_seconds: float = 1.0):
        """
        초기화합니다.

        Args:
            executor: 단일 규칙 실행기
            resolver: 인증 리졸버
            pause_seconds: 제출 사이 대기 시간 (초)
        """
        self.executor = executor
        self.resolver = resolver
        self.pause_seconds = pause_seconds

    @staticmethod
    def _fail(report: BatchReport, match: RuleMatch, error: EngineError) -> None:
        report.fail_count += 1
        report.per_item_errors.append(BatchItemError(
            key=match.key.as_string(),
            rule_id=match.rule.id,
            category=error.category,
            reason=error.reason,
            message=error.message,
        ))
        metrics.batch_items.labels(result="failed").inc()

    async def _collect_proofs(self, matches: List[RuleMatch], credentials: Credentials,
                              cancel: CancellationToken, report: BatchReport,
                              failed: Set[str]) -> Dict[str, WebAuthnProof]:
        """
        패스키가 필요한 항목의 증명을 실행 전에 모두 수집합니다.

        Returns:
            이벤트 키 -> 증명
        """
        proofs: Dict[str, WebAuthnProof] = {}
        needs_proof = [m for m in matches if resolve(m.rule, m.contract, m.event) is AuthMode.PASSKEY_REQUIRED]
        if not needs_proof:
            return proofs

        try:
            credential = await self.resolver.select_credential(credentials.identity, credentials.secret_key)
        except AuthorizationError as e:
            log.warning("credential selection failed for batch", reason=e.reason)
            for m in needs_proof:
                self._fail(report, m, e)
                failed.add(m.key.as_string())
            return proofs

        timestamp = now_ms()
        by_payload: Dict[str, WebAuthnProof] = {}
        for m in needs_proof:
            key = m.key.as_string()
            if cancel.cancelled:
                self._fail(report, m, AuthorizationError("batch cancelled before approval", reason="cancelled"))
                failed.add(key)
                continue
            try:
                prepared = prepare(m, credentials.identity, timestamp)
            except ValidationError as e:
                self._fail(report, m, e)
                failed.add(key)
                continue

            if prepared.payload in by_payload:
                proofs[key] = by_payload[prepared.payload]
                continue

            try:
                result = await self.resolver.acquire_proof(credential, prepared.payload, cancel=cancel)
            except Exception as e:
                log.exception("unexpected error while requesting proof", key=key)
                self._fail(report, m, AuthorizationError(f"proof request failed: {e}", reason="proof_error"))
                failed.add(key)
                continue

            if isinstance(result, Proof):
                by_payload[prepared.payload] = result.proof
                proofs[key] = result.proof
            elif isinstance(result, AuthTimeout):
                self._fail(report, m, AuthorizationError(
                    f"passkey approval timed out after {result.timeout_sec:g}s", reason="proof_timeout"))
                failed.add(key)
            else:
                reason = "cancelled" if result.reason == "cancelled" else "proof_denied"
                self._fail(report, m, AuthorizationError(f"passkey approval failed: {result.reason}", reason=reason))
                failed.add(key)

        return proofs

    async def execute_batch(self, matches: List[RuleMatch], credentials: Credentials, *,
                            cancel: Optional[CancellationToken] = None) -> BatchReport:
        """
        선택된 매치 이벤트를 배치로 실행합니다.

        Args:
            matches: 선택 순서대로의 실행 대상
            credentials: 배치 전체에 공유되는 서명 자료
            cancel: 취소 토큰

        Returns:
            BatchReport (성공/실패 수와 항목별 사유)
        """
        cancel = cancel or CancellationToken()
        report = BatchReport()
        if not matches:
            return report

        log.info("batch started", items=len(matches))
        failed: Set[str] = set()
        proofs = await self._collect_proofs(matches, credentials, cancel, report, failed)

        submitted = 0
        for m in matches:
            key = m.key.as_string()
            if key in failed:
                continue
            if cancel.cancelled:
                self._fail(report, m, AuthorizationError("batch cancelled before submission", reason="cancelled"))
                continue
            if submitted:
                await asyncio.sleep(self.pause_seconds)
            submitted += 1

            try:
                with with_context(batch_key=key):
                    outcome = await self.executor.execute(m, credentials, proof=proofs.get(key), cancel=cancel)
            except EngineError as e:
                self._fail(report, m, e)
                continue
            except Exception as e:
                log.exception("unexpected error during batch item", key=key)
                self._fail(report, m, EngineError(f"unexpected error: {e}", reason="unexpected"))
                continue

            report.success_count += 1
            report.outcomes[key] = outcome
            metrics.batch_items.labels(result="ok").inc()

        log.info("batch finished", summary=report.summary)
        return report
