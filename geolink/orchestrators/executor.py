"""
Single-rule executor for the GeoLink rule engine.

Takes one match event through authorization and a single submission to
the execution service, then records completion. A failed completion call
after an on-chain success is queued in the receipt outbox instead of
failing the execution.
"""

import enum
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from geolink.adapters.storage.sqlite_outbox import SQLiteOutbox
from geolink.common.cancellation import CancellationToken
from geolink.core.errors import AuthorizationError, EngineError, ReconciliationError, ValidationError
from geolink.core.gate import check_rate
from geolink.core.models import (
    AuthDenied, AuthMode, AuthTimeout, ContractCallRequest, Credentials, ExecutionOutcome,
    MatchKey, Proof, RuleMatch, VaultPaymentRequest, WebAuthnProof,
)
from geolink.core.payload import extract_timestamp, is_read_only, now_ms
from geolink.observability import metrics
from geolink.observability.logging_setup import get_logger
from geolink.ports.execution import ExecutionPort
from geolink.ports.history import ExecutionHistoryPort
from geolink.ports.lifecycle import LifecycleStorePort
from .auth_resolver import AuthResolver, PreparedCall, check_secret_key, prepare, resolve

log = get_logger("geolink.executor")


class ExecutionStep(str, enum.Enum):
    """실행 진행 단계"""
    PREPARING = "preparing"
    AUTHENTICATING = "authenticating"
    SIGNING = "signing"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    COMPLETED = "completed"


StepCallback = Callable[[MatchKey, ExecutionStep], None]


class RuleExecutor:
    """단일 규칙 실행기"""

    def __init__(self,
                 execution: ExecutionPort,
                 lifecycle: LifecycleStorePort,
                 outbox: SQLiteOutbox,
                 resolver: AuthResolver,
                 history: Optional[ExecutionHistoryPort] = None,
                 *,
                 on_step: Optional[StepCallback] = None):
        """
        초기화합니다.

        Args:
            execution: 실행 서비스 포트
            lifecycle: 수명 주기 저장소
            outbox: 완료 기록 실패 시 영수증을 보관할 Outbox
            resolver: 인증 리졸버
            history: 실행 기록 (레이트 게이트용)
            on_step: 단계 변경 콜백
        """
        self.execution = execution
        self.lifecycle = lifecycle
        self.outbox = outbox
        self.resolver = resolver
        self.history = history
        self.on_step = on_step

    def _step(self, key: MatchKey, step: ExecutionStep) -> None:
        log.debug("execution step", key=key.as_string(), step=step.value)
        if self.on_step is not None:
            self.on_step(key, step)

    async def _authorize(self, match: RuleMatch, credentials: Credentials,
                         cancel: Optional[CancellationToken]) -> WebAuthnProof:
        """패스키 증명을 획득합니다 (배치 밖에서 단독 실행할 때)."""
        identity = credentials.identity
        credential = await self.resolver.select_credential(identity, credentials.secret_key)
        prepared = prepare(match, identity, now_ms())
        result = await self.resolver.acquire_proof(credential, prepared.payload, cancel=cancel)
        if isinstance(result, Proof):
            return result.proof
        if isinstance(result, AuthTimeout):
            raise AuthorizationError(f"passkey approval timed out after {result.timeout_sec:g}s",
                                     reason="proof_timeout")
        reason = "cancelled" if isinstance(result, AuthDenied) and result.reason == "cancelled" else "proof_denied"
        raise AuthorizationError(f"passkey approval failed: {result.reason}", reason=reason)

    async def execute(self, match: RuleMatch, credentials: Credentials, *,
                      proof: Optional[WebAuthnProof] = None,
                      cancel: Optional[CancellationToken] = None) -> ExecutionOutcome:
        """
        매치 이벤트 하나를 실행합니다.

        Args:
            match: 규칙 + 컨트랙트 + 매치 이벤트
            credentials: 호출자 서명 자료
            proof: 배치에서 미리 획득한 증명
            cancel: 취소 토큰

        Returns:
            실행 결과 (성공 시 이벤트는 완료 상태)

        Raises:
            ValidationError, AuthorizationError, SubmissionError
        """
        key = match.key
        rule, contract, event = match.rule, match.contract, match.event
        identity = credentials.identity
        secret = credentials.secret_key

        self._step(key, ExecutionStep.PREPARING)
        await self._check_rate(match)
        read_only = is_read_only(rule.function_name)
        if secret:
            check_secret_key(secret)
        mode = resolve(rule, contract, event)

        if mode is AuthMode.PASSKEY_REQUIRED:
            if proof is None:
                self._step(key, ExecutionStep.AUTHENTICATING)
                proof = await self._authorize(match, credentials, cancel)
            prepared = prepare(match, identity, extract_timestamp(proof.signed_payload), proof=proof)
            if not proof.covers(prepared.payload):
                raise AuthorizationError("passkey proof does not cover the payload being submitted",
                                         reason="payload_mismatch")
        else:
            if not read_only and not secret:
                raise AuthorizationError("a secret key is required for write functions",
                                         reason="secret_key_required")
            prepared = prepare(match, identity, now_ms())

        if cancel is not None and cancel.cancelled:
            raise AuthorizationError("execution cancelled before submission", reason="cancelled")

        self._step(key, ExecutionStep.SIGNING)
        path = "vault" if prepared.vault else "contract"
        started = time.monotonic()
        self._step(key, ExecutionStep.SUBMITTING)
        try:
            outcome = await self._submit(match, credentials, prepared, proof, read_only)
        except EngineError as e:
            metrics.executions.labels(path=path, result="failed").inc()
            log.warning("execution failed", key=key.as_string(), category=e.category, reason=e.reason)
            raise
        finally:
            metrics.execution_seconds.observe(time.monotonic() - started)

        metrics.executions.labels(path=path, result="ok").inc()
        self._step(key, ExecutionStep.CONFIRMING)
        await self._complete(match, outcome)
        self._step(key, ExecutionStep.COMPLETED)
        log.info("rule executed", key=key.as_string(), tx=outcome.transaction_hash, simulated=outcome.simulated)
        return outcome

    async def _check_rate(self, match: RuleMatch) -> None:
        """
        제출 직전에 실행 횟수 제한을 다시 확인합니다.

        Raises:
            ValidationError: 구간 안의 실행 횟수가 한도에 도달한 경우
        """
        rule, event = match.rule, match.event
        if self.history is None or not rule.rate_limit.enabled:
            return
        now = datetime.now(timezone.utc)
        since = now - timedelta(seconds=rule.rate_limit.execution_time_window_seconds)
        timestamps = await self.history.timestamps(rule.id, event.matched_public_key, since)
        decision = check_rate(rule, timestamps, now)
        if not decision:
            metrics.matches_held.labels(reason=decision.reason).inc()
            raise ValidationError(decision.message, reason=decision.reason)

    async def _submit(self, match: RuleMatch, credentials: Credentials, prepared: PreparedCall,
                      proof: Optional[WebAuthnProof], read_only: bool) -> ExecutionOutcome:
        rule, contract, event = match.rule, match.contract, match.event
        if prepared.vault:
            request = VaultPaymentRequest(
                identity=credentials.identity,
                signing_material=credentials.secret_key,
                destination=prepared.fields.destination,
                amount=prepared.fields.amount,
                asset=prepared.fields.asset,
                proof=proof,
                rule_id=rule.id,
            )
            return await self.execution.execute_vault_payment(request)

        request = ContractCallRequest(
            contract_id=contract.id,
            function_name=rule.function_name,
            parameters=prepared.submission_parameters,
            identity=credentials.identity,
            signing_material=credentials.secret_key,
            submit_to_ledger=not read_only or bool(credentials.secret_key),
            rule_id=rule.id,
            update_id=event.update_id,
            matched_public_key=event.matched_public_key,
            proof=proof,
        )
        return await self.execution.execute_contract_call(request)

    async def _complete(self, match: RuleMatch, outcome: ExecutionOutcome) -> None:
        """완료 기록 (실패 시 영수증을 Outbox에 보관)"""
        event = match.event
        tx = outcome.transaction_hash
        try:
            await self.lifecycle.complete(event.rule_id, event.matched_public_key, event.update_id, tx)
            metrics.completions.labels(result="ok").inc()
        except Exception as e:
            metrics.completions.labels(result="failed").inc()
            err = ReconciliationError(
                f"completion bookkeeping failed: {e}",
                rule_id=event.rule_id,
                matched_public_key=event.matched_public_key,
                transaction_hash=tx,
            )
            if tx:
                await self.outbox.enqueue(event.rule_id, event.matched_public_key, event.update_id, tx)
                log.warning(err.message, rule_id=event.rule_id, tx=tx)
            else:
                # 온체인 효과가 없으므로 재실행해도 안전
                log.warning(err.message + " (no transaction hash, event stays pending)", rule_id=event.rule_id)

        if self.history is not None:
            try:
                await self.history.record(event.rule_id, event.matched_public_key, datetime.now(timezone.utc))
            except Exception as e:
                log.warning(f"실행 기록 저장 실패: {e}", rule_id=event.rule_id)
