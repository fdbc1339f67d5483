"""
테스트 설정 및 픽스처

이 모듈은 pytest 설정과 공통 픽스처, 포트용 가짜 구현을 제공합니다.
"""

import pytest
import pytest_asyncio
import asyncio
import tempfile
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from geolink.adapters.storage import SQLiteExecutionHistory, SQLiteLifecycleStore, SQLiteOutbox
from geolink.core.errors import AuthorizationError, EngineError
from geolink.core.models import (
    ContractCallRequest, ContractRef, Credential, Credentials, ExecutionOutcome, Geofence,
    Location, MatchEvent, Rule, VaultPaymentRequest, WebAuthnProof,
)
from geolink.core.parameters import parse_template
from geolink.orchestrators import AuthResolver, BatchOrchestrator, ReceiptReconciler, RuleEngine, RuleExecutor
from geolink.settings import Settings

# 형식상 유효한 비밀 키 (S + base32 55자)
VALID_SECRET = "S" + "A" * 55
OPERATOR = "GOPERATORPUBLICKEY"


class FakeCredentialService:
    """CredentialPort 가짜 구현"""

    def __init__(self, credentials: Optional[List[Credential]] = None, *,
                 register_ok: bool = True, registers_on_chain: bool = True,
                 proof_delay: float = 0.0, deny: bool = False):
        if credentials is None:
            credentials = [Credential(credential_id="cred-1", public_key_material="spki-1",
                                      is_registered_on_chain=True)]
        self.credentials = list(credentials)
        self.register_ok = register_ok
        self.registers_on_chain = registers_on_chain
        self.proof_delay = proof_delay
        self.deny = deny
        self.proof_requests: List[str] = []
        self.registrations: List[str] = []
        self.list_calls = 0

    async def list_credentials(self, identity: str) -> List[Credential]:
        self.list_calls += 1
        return list(self.credentials)

    async def request_proof(self, credential: Credential, payload: str) -> WebAuthnProof:
        self.proof_requests.append(payload)
        if self.proof_delay:
            await asyncio.sleep(self.proof_delay)
        if self.deny:
            raise AuthorizationError("user denied the request", reason="proof_denied")
        return WebAuthnProof(
            credential_id=credential.credential_id,
            public_key_material=credential.public_key_material,
            signature="sig",
            authenticator_data="auth-data",
            client_data="client-data",
            signed_payload=payload,
        )

    async def register_credential(self, identity: str, secret_key: str, public_key_material: str) -> bool:
        self.registrations.append(public_key_material)
        if self.register_ok and self.registers_on_chain:
            self.credentials = [
                c.model_copy(update={"is_registered_on_chain": True})
                if c.public_key_material == public_key_material else c
                for c in self.credentials
            ]
        return self.register_ok


class FakeExecutionService:
    """ExecutionPort 가짜 구현"""

    def __init__(self):
        self.calls: List[ContractCallRequest] = []
        self.vault_calls: List[VaultPaymentRequest] = []
        self.fail_rules: Dict[int, EngineError] = {}
        self.no_tx = False

    def _outcome(self, n: int) -> ExecutionOutcome:
        if self.no_tx:
            return ExecutionOutcome(success=True, transaction_hash=None, simulated=True)
        return ExecutionOutcome(success=True, transaction_hash=f"tx-{n}")

    async def execute_contract_call(self, request: ContractCallRequest) -> ExecutionOutcome:
        self.calls.append(request)
        err = self.fail_rules.get(request.rule_id)
        if err is not None:
            raise err
        return self._outcome(len(self.calls) + len(self.vault_calls))

    async def execute_vault_payment(self, request: VaultPaymentRequest) -> ExecutionOutcome:
        self.vault_calls.append(request)
        err = self.fail_rules.get(request.rule_id)
        if err is not None:
            raise err
        return self._outcome(len(self.calls) + len(self.vault_calls))


class FakeRuleStore:
    """RulePort + BalancePort 가짜 구현"""

    def __init__(self, rules=(), contracts=(), wallets=None, balances=None):
        self.rules = {r.id: r for r in rules}
        self.contracts = {c.id: c for c in contracts}
        self.wallets = wallets or {}
        self.balances = balances or {}
        self.deactivated: List[int] = []
        self.balance_queries: List[tuple] = []

    async def get_rule(self, rule_id: int) -> Rule:
        return self.rules[rule_id]

    async def get_contract(self, contract_id: int) -> ContractRef:
        return self.contracts[contract_id]

    async def list_rules(self) -> List[Rule]:
        return list(self.rules.values())

    async def wallets_in_range(self, rule_id: int):
        return frozenset(self.wallets.get(rule_id, ()))

    async def deactivate_rule(self, rule_id: int) -> None:
        self.deactivated.append(rule_id)
        self.rules[rule_id] = self.rules[rule_id].model_copy(update={"is_active": False})

    async def get_balance(self, identity: str, *, asset=None, smart_wallet_contract_id=None) -> float:
        self.balance_queries.append((identity, asset, smart_wallet_contract_id))
        value = self.balances[identity]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def temp_db_path():
    """임시 데이터베이스 파일 경로"""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        temp_path = f.name
    yield temp_path
    # 테스트 후 파일 정리
    if os.path.exists(temp_path):
        os.unlink(temp_path)


@pytest.fixture
def sample_settings():
    """테스트용 설정"""
    settings = Settings()
    settings.observability.service_name = "test-service"
    settings.observability.build_version = "1.0.0"
    settings.observability.log_level = "INFO"
    settings.observability.http_port = 8080
    settings.engine.operator_public_key = OPERATOR
    return settings


@pytest.fixture
def make_rule():
    """테스트용 Rule 생성기"""
    def _make(rule_id: int = 5, contract_id: int = 1, function_name: str = "increment",
              parameters: Optional[dict] = None, **fields) -> Rule:
        data = dict(
            id=rule_id,
            contract_id=contract_id,
            rule_name=f"rule-{rule_id}",
            rule_type="location",
            geofence=Geofence(latitude=37.5665, longitude=126.978, radius_m=100),
            function_name=function_name,
            function_parameters=parse_template(parameters or {}),
        )
        data.update(fields)
        return Rule(**data)
    return _make


@pytest.fixture
def make_contract():
    """테스트용 ContractRef 생성기"""
    def _make(contract_id: int = 1, **fields) -> ContractRef:
        data = dict(id=contract_id, contract_address=f"CCONTRACT{contract_id}", contract_name="test")
        data.update(fields)
        return ContractRef(**data)
    return _make


@pytest.fixture
def make_event():
    """테스트용 MatchEvent 생성기"""
    def _make(rule_id: int = 5, pk: str = "abc123", update_id: Optional[int] = 42,
              position: int = 0, params: Optional[dict] = None, dwell: Optional[float] = None,
              matched_at: Optional[datetime] = None) -> MatchEvent:
        return MatchEvent(
            rule_id=rule_id,
            matched_public_key=pk,
            matched_at=matched_at or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc),
            location=Location(latitude=37.5665, longitude=126.978),
            update_id=update_id,
            function_parameters=params or {},
            position=position,
            location_duration_seconds=dwell,
        )
    return _make


@pytest.fixture
def credentials():
    """비밀 키가 있는 호출자 자격 증명"""
    return Credentials(identity=OPERATOR, secret_key=VALID_SECRET)


@dataclass
class EngineEnv:
    """엔진과 가짜 포트 묶음"""
    engine: RuleEngine
    rules: FakeRuleStore
    execution: FakeExecutionService
    creds: FakeCredentialService
    lifecycle: SQLiteLifecycleStore
    outbox: SQLiteOutbox
    history: SQLiteExecutionHistory
    executor: RuleExecutor
    resolver: AuthResolver


@pytest.fixture
def engine_factory(tmp_path):
    """가짜 포트와 임시 SQLite로 RuleEngine을 구성합니다."""
    async def _build(rules=(), contracts=(), wallets=None, balances=None,
                     creds: Optional[FakeCredentialService] = None,
                     proof_timeout: float = 5.0) -> EngineEnv:
        rule_store = FakeRuleStore(rules, contracts, wallets, balances)
        execution = FakeExecutionService()
        creds = creds or FakeCredentialService()
        lifecycle = SQLiteLifecycleStore(str(tmp_path / "lifecycle.db")); await lifecycle.init()
        outbox = SQLiteOutbox(str(tmp_path / "outbox.db")); await outbox.init()
        history = SQLiteExecutionHistory(str(tmp_path / "history.db")); await history.init()
        resolver = AuthResolver(creds, settle_seconds=0, proof_timeout=proof_timeout)
        executor = RuleExecutor(execution, lifecycle, outbox, resolver, history)
        batch = BatchOrchestrator(executor, resolver, pause_seconds=0)
        reconciler = ReceiptReconciler(outbox, lifecycle, max_attempts=3)
        engine = RuleEngine(rule_store, lifecycle, executor, batch, reconciler,
                            history=history, balance=rule_store, poll_interval=0.01,
                            operator_identity=OPERATOR)
        return EngineEnv(engine, rule_store, execution, creds, lifecycle, outbox, history, executor, resolver)
    return _build


@pytest_asyncio.fixture
async def lifecycle_store(temp_db_path):
    """초기화된 SQLite 수명 주기 저장소"""
    store = SQLiteLifecycleStore(temp_db_path)
    await store.init()
    return store


# pytest 설정
def pytest_configure(config):
    """pytest 설정"""
    config.addinivalue_line(
        "markers", "asyncio: 비동기 테스트 마커"
    )
    config.addinivalue_line(
        "markers", "slow: 느린 테스트 마커"
    )
    config.addinivalue_line(
        "markers", "integration: 통합 테스트 마커"
    )


def pytest_collection_modifyitems(config, items):
    """테스트 아이템 수정"""
    for item in items:
        # 비동기 테스트에 asyncio 마커 추가
        if asyncio.iscoroutinefunction(item.function):
            item.add_marker(pytest.mark.asyncio)

        # 통합 테스트 마커 추가
        if "integration" in item.name or "scenario" in item.name:
            item.add_marker(pytest.mark.integration)
