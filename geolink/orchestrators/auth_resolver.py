"""
Authentication resolver for the GeoLink rule engine.

Decides whether a rule needs secret-key signing or a passkey proof,
selects the single on-chain credential for an identity (registering it
once if needed), builds the canonical signed payload and acquires proofs.
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from geolink.common.cancellation import CancellationToken
from geolink.core.errors import AuthorizationError
from geolink.core.models import (
    AuthDenied, AuthMode, AuthResult, AuthTimeout, ContractRef, Credential,
    MatchEvent, Proof, Rule, RuleMatch, SystemPlaceholder, WebAuthnProof,
)
from geolink.core.parameters import (
    ResolutionContext, has_webauthn_fields, overlay_event_parameters, resolve as resolve_template,
)
from geolink.core.payload import PaymentFields, build_signed_payload, is_payment_function, payment_fields
from geolink.observability import metrics
from geolink.observability.logging_setup import get_logger
from geolink.ports.credentials import CredentialPort

log = get_logger("geolink.auth")

# Stellar 시드 형식: S + base32 55자
SECRET_KEY_PATTERN = re.compile(r"^S[A-Z2-7]{55}$")


def check_secret_key(secret_key: str) -> None:
    """
    비밀 키 형식을 확인합니다.

    Raises:
        AuthorizationError: 형식이 올바르지 않은 경우
    """
    if not SECRET_KEY_PATTERN.match(secret_key or ""):
        raise AuthorizationError("secret key format is invalid", reason="invalid_secret_key")


def call_parameters(rule: Rule, event: MatchEvent) -> Dict[str, Any]:
    """템플릿을 매치 이벤트로 해석하고 이벤트 파라미터를 덮어씁니다."""
    context = ResolutionContext(
        rule_id=rule.id,
        matched_public_key=event.matched_public_key,
        latitude=event.location.latitude if event.location else None,
        longitude=event.location.longitude if event.location else None,
        matched_at=event.matched_at,
    )
    return overlay_event_parameters(resolve_template(rule.function_parameters, context),
                                    event.function_parameters)


def resolve(rule: Rule, contract: ContractRef, event: Optional[MatchEvent] = None) -> AuthMode:
    """
    규칙 실행에 필요한 인증 방식을 결정합니다.

    컨트랙트가 WebAuthn을 요구하거나, 템플릿에 WebAuthn 필드가 있거나,
    볼트 경유 결제 함수이면 패스키가 필요합니다. 이벤트가 주어지면
    결제 판단은 prepare()와 같은 해석된 파라미터로 합니다.
    """
    keys = list(rule.function_parameters.keys())
    if event is not None:
        keys.extend(k for k in call_parameters(rule, event) if k not in rule.function_parameters)
    if contract.requires_webauthn:
        return AuthMode.PASSKEY_REQUIRED
    if has_webauthn_fields(keys):
        return AuthMode.PASSKEY_REQUIRED
    if contract.routes_through_vault and is_payment_function(rule.function_name, keys):
        return AuthMode.PASSKEY_REQUIRED
    return AuthMode.SECRET_KEY_ONLY


@dataclass
class PreparedCall:
    """서명/제출용으로 해석된 호출"""
    parameters: Dict[str, Any]
    payload: str
    payment: bool
    vault: bool
    timestamp: int
    fields: Optional[PaymentFields] = None
    proof_parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def submission_parameters(self) -> Dict[str, Any]:
        merged = dict(self.parameters)
        merged.update(self.proof_parameters)
        return merged


def prepare(match: RuleMatch, identity: str, timestamp: int,
            proof: Optional[WebAuthnProof] = None) -> PreparedCall:
    """
    매치 이벤트로부터 파라미터와 서명 페이로드를 결정적으로 생성합니다.

    Args:
        match: 규칙 + 컨트랙트 + 매치 이벤트
        identity: 서명하는 지갑 공개키
        timestamp: 밀리초 타임스탬프 (증명 생성과 제출에서 동일해야 함)
        proof: 제출 시점의 증명 (증명 필드 채우기용)

    Raises:
        ValidationError: 결제 필드를 해석할 수 없는 경우
    """
    rule, contract, event = match.rule, match.contract, match.event
    parameters = call_parameters(rule, event)
    payment = is_payment_function(rule.function_name, parameters.keys())
    fields = payment_fields(parameters) if payment else None
    payload = build_signed_payload(
        function_name=rule.function_name,
        contract_id=contract.contract_address or contract.id,
        parameters=parameters,
        source=identity,
        timestamp=timestamp,
        payment=payment,
    )

    proof_parameters: Dict[str, Any] = {}
    if proof is not None:
        values = proof.as_parameters()
        for key, value in rule.function_parameters.items():
            if isinstance(value, SystemPlaceholder) and value.from_proof:
                proof_parameters[key] = values[value.source]

    return PreparedCall(
        parameters=parameters,
        payload=payload,
        payment=payment,
        vault=payment and contract.routes_through_vault,
        timestamp=timestamp,
        fields=fields,
        proof_parameters=proof_parameters,
    )


class AuthResolver:
    """패스키 자격 증명 선택과 증명 획득"""

    def __init__(self, credentials: CredentialPort, *,
                 settle_seconds: float = 3.0,
                 proof_timeout: float = 120.0):
        """
        초기화합니다.

        Args:
            credentials: 자격 증명 서비스 포트
            settle_seconds: 자동 등록 후 온체인 반영 대기 시간 (초)
            proof_timeout: 증명 요청 최대 대기 시간 (초)
        """
        self.credentials = credentials
        self.settle_seconds = settle_seconds
        self.proof_timeout = proof_timeout

    async def select_credential(self, identity: str, secret_key: Optional[str]) -> Credential:
        """
        온체인에 등록된 자격 증명 하나를 선택합니다.

        등록된 것이 없고 비밀 키가 있으면 한 번 자동 등록한 뒤
        반영 대기 후 다시 조회합니다.

        Raises:
            AuthorizationError: 자격 증명을 찾을 수 없는 경우
        """
        creds = await self.credentials.list_credentials(identity)
        registered = [c for c in creds if c.is_registered_on_chain]
        if registered:
            return registered[0]

        if not creds:
            raise AuthorizationError(
                "No passkey is registered for this wallet. Register a passkey first.",
                reason="no_credential",
            )
        if not secret_key:
            raise AuthorizationError(
                "Passkey is not registered on the contract and no secret key is available to register it.",
                reason="credential_not_registered",
            )
        check_secret_key(secret_key)

        candidate = creds[0]
        log.info("auto-registering passkey on contract", credential_id=candidate.credential_id)
        ok = await self.credentials.register_credential(identity, secret_key, candidate.public_key_material)
        if not ok:
            raise AuthorizationError(
                "Passkey registration on the contract failed. Re-register the credential and try again.",
                reason="reregister_credential",
            )

        await asyncio.sleep(self.settle_seconds)

        creds = await self.credentials.list_credentials(identity)
        registered = [c for c in creds if c.is_registered_on_chain]
        for c in registered:
            if c.credential_id == candidate.credential_id:
                return c
        if registered:
            return registered[0]
        raise AuthorizationError(
            "Passkey is still not registered on the contract after auto-registration. "
            "Re-register the credential and try again.",
            reason="reregister_credential",
        )

    async def acquire_proof(self, credential: Credential, payload: str, *,
                            cancel: Optional[CancellationToken] = None,
                            timeout: Optional[float] = None) -> AuthResult:
        """
        페이로드에 대한 증명을 요청합니다.

        취소 토큰과 타임아웃 중 먼저 오는 쪽이 진행 중인 요청만 중단합니다.

        Returns:
            Proof | AuthDenied | AuthTimeout
        """
        timeout = self.proof_timeout if timeout is None else timeout
        if cancel is not None and cancel.cancelled:
            metrics.proofs_requested.labels(result="cancelled").inc()
            return AuthDenied(reason="cancelled")

        proof_task = asyncio.ensure_future(self.credentials.request_proof(credential, payload))
        waiters = {proof_task}
        cancel_task = None
        if cancel is not None:
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_task)

        try:
            done, pending = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            leftovers = [t for t in waiters if not t.done()]
            for t in leftovers:
                t.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)

        if proof_task in done:
            try:
                proof = proof_task.result()
            except AuthorizationError as e:
                metrics.proofs_requested.labels(result="denied").inc()
                return AuthDenied(reason=e.message)
            except Exception as e:
                metrics.proofs_requested.labels(result="error").inc()
                log.warning(f"증명 요청 실패: {e}", credential_id=credential.credential_id)
                return AuthDenied(reason=f"proof request failed: {e}")
            if not proof.covers(payload):
                metrics.proofs_requested.labels(result="denied").inc()
                return AuthDenied(reason="proof does not cover the requested payload")
            metrics.proofs_requested.labels(result="ok").inc()
            return Proof(proof=proof)

        if cancel_task is not None and cancel_task in done:
            metrics.proofs_requested.labels(result="cancelled").inc()
            log.info("proof request cancelled", credential_id=credential.credential_id)
            return AuthDenied(reason="cancelled")

        metrics.proofs_requested.labels(result="timeout").inc()
        log.warning("proof request timed out", timeout=timeout)
        return AuthTimeout(timeout_sec=timeout)
