"""
GeoLink platform API client.

This module provides an aiohttp client for the GeoLink backend. It
implements the execution, credential, rule, lifecycle, balance and
match-ingest ports. Reads and bookkeeping calls are retried with
backoff; ledger submissions are sent exactly once.
"""

import aiohttp
import asyncio
from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, FrozenSet, List, Optional, Set
from geolink.common.retry import retry_with_backoff
from geolink.core import normalize
from geolink.core.errors import AuthorizationError, SubmissionError, classify_failure
from geolink.core.models import (
    CompletionRecord, ContractCallRequest, ContractRef, Credential, ExecutionOutcome,
    MatchEvent, Rule, VaultPaymentRequest, WebAuthnProof, observation_key,
)
from geolink.observability.logging_setup import get_logger

log = get_logger("geolink.api")

# 재시도 대상 (네트워크 계층 오류)
RETRYABLE = (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError, asyncio.TimeoutError)


def _proof_fields(proof: Optional[WebAuthnProof]) -> Dict[str, Any]:
    if proof is None:
        return {}
    return {
        "passkeyPublicKeySPKI": proof.public_key_material,
        "webauthnSignature": proof.signature,
        "webauthnAuthenticatorData": proof.authenticator_data,
        "webauthnClientData": proof.client_data,
        "signaturePayload": proof.signed_payload,
    }


class GeoLinkClient:
    """GeoLink 플랫폼 API 클라이언트"""

    def __init__(self,
                 base_url: str,
                 token: str,
                 timeout: int = 30,
                 max_retries: int = 3,
                 backoff_initial: float = 0.5,
                 backoff_max: float = 10.0,
                 poll_interval: float = 10.0):
        """
        초기화합니다.

        Args:
            base_url: API 기본 URL (예: https://host/api)
            token: 서비스 계정 Bearer 토큰
            timeout: 요청 타임아웃 (초)
            max_retries: 조회/기록 호출 최대 재시도 횟수
            backoff_initial: 재시도 기본 지연 (초)
            backoff_max: 재시도 최대 지연 (초)
            poll_interval: 매치 수집 폴링 주기 (초)
        """
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.poll_interval = poll_interval
        self.session: Optional[aiohttp.ClientSession] = None
        self._seen: Set[str] = set()
        self._seen_order: Deque[str] = deque(maxlen=5000)

        log.info("GeoLink API 클라이언트 초기화됨", base_url=self.base_url)

    async def __aenter__(self):
        """비동기 컨텍스트 매니저 진입"""
        self.session = aiohttp.ClientSession(
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json"
            },
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """비동기 컨텍스트 매니저 종료"""
        if self.session:
            await self.session.close()
            self.session = None

    async def _make_request(self, method: str, endpoint: str, *, retry: bool = True, **kwargs) -> Dict:
        """
        조회/기록 API 요청을 수행합니다 (네트워크 오류 시 재시도).

        Args:
            method: HTTP 메서드
            endpoint: API 엔드포인트
            retry: False면 한 번만 요청 (사용자 승인이 걸린 요청)
            **kwargs: 추가 요청 매개변수

        Returns:
            응답 데이터
        """
        if not self.session:
            raise RuntimeError("세션이 초기화되지 않았습니다. async with를 사용하세요.")

        url = f"{self.base_url}{endpoint}"

        async def _request():
            async with self.session.request(method, url, **kwargs) as response:
                response.raise_for_status()
                return await response.json()

        if not retry:
            return await _request()

        return await retry_with_backoff(
            _request,
            max_retries=self.max_retries,
            base_delay=self.backoff_initial,
            max_delay=self.backoff_max,
            retry_on=RETRYABLE,
        )

    async def _submit(self, endpoint: str, body: Dict[str, Any]) -> ExecutionOutcome:
        """
        실행 요청을 한 번만 제출합니다.

        Raises:
            AuthorizationError: 키/패스키 불일치
            SubmissionError: 서비스 거부 또는 네트워크 실패
        """
        if not self.session:
            raise RuntimeError("세션이 초기화되지 않았습니다. async with를 사용하세요.")

        url = f"{self.base_url}{endpoint}"
        try:
            async with self.session.post(url, json=body) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = {"error": await response.text()}
                data = data if isinstance(data, dict) else {"result": data}
                if response.status >= 400:
                    message = data.get("error") or data.get("message") or f"HTTP {response.status}"
                    details = data.get("details")
                    if isinstance(details, str) and details:
                        message = f"{message}: {details}"
                    raise classify_failure(message, response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SubmissionError(f"execution service unreachable: {e}", reason="network") from e

        outcome = normalize.to_outcome(data)
        if not outcome.success:
            raise classify_failure(outcome.error or "execution failed")
        if outcome.transaction_hash is None and data.get("is_read_only"):
            outcome = outcome.model_copy(update={"simulated": True})
        return outcome

    # ---- ExecutionPort ----

    async def execute_contract_call(self, request: ContractCallRequest) -> ExecutionOutcome:
        """일반 컨트랙트 함수 실행을 제출합니다."""
        body: Dict[str, Any] = {
            "function_name": request.function_name,
            "parameters": request.parameters,
            "user_public_key": request.identity,
            "submit_to_ledger": request.submit_to_ledger,
            "rule_id": request.rule_id,
            "update_id": request.update_id,
            "matched_public_key": request.matched_public_key,
        }
        if request.signing_material:
            body["user_secret_key"] = request.signing_material
        body.update(_proof_fields(request.proof))
        log.info("submitting contract call", rule_id=request.rule_id, function=request.function_name)
        return await self._submit(f"/contracts/{request.contract_id}/execute", body)

    async def execute_vault_payment(self, request: VaultPaymentRequest) -> ExecutionOutcome:
        """스마트 월렛 결제를 제출합니다."""
        body: Dict[str, Any] = {
            "userPublicKey": request.identity,
            "destinationAddress": request.destination,
            "amount": request.amount,
            "assetAddress": request.asset,
            "rule_id": request.rule_id,
        }
        if request.signing_material:
            body["userSecretKey"] = request.signing_material
        body.update(_proof_fields(request.proof))
        log.info("submitting vault payment", rule_id=request.rule_id)
        return await self._submit("/smart-wallet/execute-payment", body)

    # ---- CredentialPort ----

    async def list_credentials(self, identity: str) -> List[Credential]:
        data = await self._make_request("GET", "/webauthn/passkeys", params={"userPublicKey": identity})
        return [normalize.to_credential(raw) for raw in data.get("passkeys") or []]

    async def request_proof(self, credential: Credential, payload: str) -> WebAuthnProof:
        """
        패스키 증명을 요청합니다 (사용자 승인 대기).

        Raises:
            AuthorizationError: 사용자가 거부했거나 응답이 불완전한 경우
        """
        data = await self._make_request("POST", "/webauthn/authenticate", retry=False, json={
            "credentialId": credential.credential_id,
            "payload": payload,
        })
        if data.get("success") is False:
            raise AuthorizationError(data.get("error") or "passkey approval denied", reason="proof_denied")
        try:
            return WebAuthnProof(
                credential_id=credential.credential_id,
                public_key_material=credential.public_key_material,
                signature=data["signature"],
                authenticator_data=data["authenticatorData"],
                client_data=data["clientDataJSON"],
                signed_payload=payload,
            )
        except KeyError as e:
            raise AuthorizationError(f"incomplete passkey proof: missing {e}", reason="proof_incomplete") from e

    async def register_credential(self, identity: str, secret_key: str, public_key_material: str) -> bool:
        data = await self._make_request("POST", "/smart-wallet/register-signer", json={
            "userPublicKey": identity,
            "userSecretKey": secret_key,
            "passkeyPublicKeySPKI": public_key_material,
        })
        return bool(data.get("success"))

    # ---- RulePort ----

    async def get_rule(self, rule_id: int) -> Rule:
        try:
            data = await self._make_request("GET", f"/contracts/rules/{rule_id}")
        except aiohttp.ClientResponseError as e:
            if e.status == 404:
                raise KeyError(rule_id) from e
            raise
        return normalize.to_rule(data.get("rule") or {})

    async def get_contract(self, contract_id: int) -> ContractRef:
        try:
            data = await self._make_request("GET", f"/contracts/{contract_id}")
        except aiohttp.ClientResponseError as e:
            if e.status == 404:
                raise KeyError(contract_id) from e
            raise
        return normalize.to_contract(data.get("contract") or {})

    async def list_rules(self) -> List[Rule]:
        data = await self._make_request("GET", "/contracts/rules")
        return [normalize.to_rule(raw) for raw in data.get("rules") or []]

    async def wallets_in_range(self, rule_id: int) -> FrozenSet[str]:
        data = await self._make_request("GET", f"/contracts/rules/{rule_id}/quorum")
        return frozenset(data.get("wallets_in_range") or [])

    async def deactivate_rule(self, rule_id: int) -> None:
        await self._make_request("PUT", f"/contracts/rules/{rule_id}", json={"is_active": False})
        log.info("rule deactivated", rule_id=rule_id)

    # ---- BalancePort ----

    async def get_balance(self, identity: str, *, asset: Optional[str] = None,
                          smart_wallet_contract_id: Optional[str] = None) -> float:
        params = {"userPublicKey": identity}
        if asset:
            params["assetAddress"] = asset
        if smart_wallet_contract_id:
            params["contractId"] = smart_wallet_contract_id
            data = await self._make_request("GET", "/smart-wallet/vault-balance", params=params)
        else:
            data = await self._make_request("GET", "/smart-wallet/balance", params=params)
        value = data.get("balanceInXLM", data.get("balance", 0))
        return float(value or 0)

    # ---- LifecycleStorePort ----

    async def mark_pending(self, event: MatchEvent) -> bool:
        # 원격 파이프라인이 대기 목록을 소유함
        log.debug("pending state is owned by the platform", key=event.key.as_string())
        return False

    async def complete(self, rule_id: int, matched_public_key: str,
                       update_id: Optional[int], transaction_hash: Optional[str]) -> bool:
        data = await self._make_request("POST", f"/contracts/rules/pending/{rule_id}/complete", json={
            "matched_public_key": matched_public_key,
            "update_id": update_id,
            "transaction_hash": transaction_hash,
        })
        return bool(data.get("success", True))

    async def reject(self, rule_id: int, matched_public_key: str, update_id: Optional[int] = None) -> bool:
        data = await self._make_request("POST", f"/contracts/rules/pending/{rule_id}/reject", json={
            "matched_public_key": matched_public_key,
            "update_id": update_id,
        })
        return bool(data.get("success", True))

    async def list_pending(self) -> List[MatchEvent]:
        return normalize.to_match_events(await self.fetch_matches())

    async def list_rejected(self) -> List[MatchEvent]:
        data = await self._make_request("GET", "/contracts/rules/rejected")
        return normalize.to_match_events(data.get("rejected_rules") or [], state="rejected")

    async def list_completed(self) -> List[CompletionRecord]:
        """완료 목록을 조회하고 중복 보고를 제거합니다."""
        data = await self._make_request("GET", "/contracts/rules/completed")
        records: Dict[str, CompletionRecord] = {}
        for raw in data.get("completed_rules") or []:
            record = normalize.to_completion_record(raw)
            records.setdefault(record.dedup_key, record)
        return list(records.values())

    # ---- MatchIngestPort ----

    async def fetch_matches(self) -> List[Dict[str, Any]]:
        data = await self._make_request("GET", "/contracts/rules/pending")
        return list(data.get("pending_rules") or [])

    def _remember(self, key: str) -> bool:
        """처음 본 키면 True"""
        if key in self._seen:
            return False
        if len(self._seen_order) == self._seen_order.maxlen:
            self._seen.discard(self._seen_order[0])
        self._seen_order.append(key)
        self._seen.add(key)
        return True

    async def recv(self) -> AsyncIterator[dict]:
        """
        대기 매치 목록을 주기적으로 폴링하여 새 항목만 내보냅니다.

        Yields:
            원시 매치 데이터
        """
        while True:
            try:
                for raw in await self.fetch_matches():
                    key = observation_key(raw.get("rule_id"), raw.get("matched_public_key"), raw.get("update_id"),
                                          raw.get("matched_at") or raw.get("received_at"))
                    if self._remember(key):
                        yield raw
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.warning(f"매치 폴링 실패: {e}")
            await asyncio.sleep(self.poll_interval)
