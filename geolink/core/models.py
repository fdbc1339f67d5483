"""
Core domain models for the GeoLink rule engine.

This module defines rules, match events, authorization proofs and
execution outcomes using Pydantic v2 for type safety and validation.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Literal, NamedTuple, Optional, Union
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator

from geolink.common.geo import validate_coordinates

# 규칙/트리거 타입 정의
RuleType = Literal["location", "geofence", "proximity"]
TriggerOn = Literal["enter", "exit", "within", "proximity"]
QuorumType = Literal["any", "all", "exact"]
LifecycleState = Literal["pending", "completed", "rejected"]

# 실행 시점에 채워지는 시스템 값
PlaceholderSource = Literal[
    "matched_public_key",
    "latitude",
    "longitude",
    "matched_at",
    "rule_id",
    "signature_payload",
    "webauthn_signature",
    "webauthn_authenticator_data",
    "webauthn_client_data",
]

# 패스키 증명에서 채워지는 값
PROOF_SOURCES = frozenset({
    "signature_payload",
    "webauthn_signature",
    "webauthn_authenticator_data",
    "webauthn_client_data",
})

# 원형 지오펜스(중심+반경)가 필요한 규칙 타입
CIRCLE_RULE_TYPES = frozenset({"location", "proximity"})


class AuthMode(str, enum.Enum):
    """규칙 실행에 필요한 인증 방식"""
    SECRET_KEY_ONLY = "secret_key_only"
    PASSKEY_REQUIRED = "passkey_required"


class LiteralValue(BaseModel):
    """템플릿의 고정 값"""
    kind: Literal["literal"] = "literal"
    value: Any = None


class SystemPlaceholder(BaseModel):
    """실행 시점에 시스템이 채우는 값"""
    kind: Literal["system"] = "system"
    source: PlaceholderSource

    @property
    def from_proof(self) -> bool:
        return self.source in PROOF_SOURCES


ParameterValue = Annotated[Union[LiteralValue, SystemPlaceholder], Field(discriminator="kind")]


class Geofence(BaseModel):
    """원형 지오펜스"""
    latitude: float
    longitude: float
    radius_m: float = Field(gt=0)

    @model_validator(mode="after")
    def _check_center(self) -> "Geofence":
        if not validate_coordinates(self.latitude, self.longitude):
            raise ValueError(f"invalid geofence center ({self.latitude}, {self.longitude})")
        return self


class Location(BaseModel):
    """관측 위치"""
    latitude: float
    longitude: float

    @model_validator(mode="after")
    def _check_coordinates(self) -> "Location":
        if not validate_coordinates(self.latitude, self.longitude):
            raise ValueError(f"invalid location ({self.latitude}, {self.longitude})")
        return self


class QuorumPolicy(BaseModel):
    """필수 지갑 집합 정책"""
    model_config = ConfigDict(frozen=True)

    required_wallet_public_keys: FrozenSet[str] = frozenset()
    minimum_wallet_count: Optional[int] = None
    quorum_type: QuorumType = "any"

    @model_validator(mode="after")
    def _check_minimum(self) -> "QuorumPolicy":
        required = len(self.required_wallet_public_keys)
        if required == 0:
            return self
        if self.minimum_wallet_count is None:
            raise ValueError("minimum_wallet_count is required when required_wallet_public_keys is set")
        if not 1 <= self.minimum_wallet_count <= required:
            raise ValueError(
                f"minimum_wallet_count must be between 1 and {required}, got {self.minimum_wallet_count}"
            )
        return self

    @property
    def is_empty(self) -> bool:
        return not self.required_wallet_public_keys


class RateLimitPolicy(BaseModel):
    """지갑별 실행 횟수 제한"""
    max_executions_per_public_key: Optional[int] = Field(default=None, ge=1)
    execution_time_window_seconds: Optional[int] = Field(default=None, ge=1)

    @property
    def enabled(self) -> bool:
        return self.max_executions_per_public_key is not None and self.execution_time_window_seconds is not None


class DwellPolicy(BaseModel):
    """최소 체류 시간"""
    min_location_duration_seconds: Optional[int] = Field(default=None, ge=0)

    @property
    def enabled(self) -> bool:
        return bool(self.min_location_duration_seconds)


class BalancePolicy(BaseModel):
    """잔액 기준 자동 비활성화"""
    auto_deactivate_on_balance_threshold: bool = False
    balance_threshold_xlm: Optional[float] = None
    balance_check_asset_address: Optional[str] = None
    use_smart_wallet_balance: bool = False

    @property
    def enabled(self) -> bool:
        return self.auto_deactivate_on_balance_threshold and self.balance_threshold_xlm is not None


class ContractRef(BaseModel):
    """규칙이 속한 컨트랙트"""
    id: int
    contract_address: str = ""
    contract_name: str = ""
    requires_webauthn: bool = False
    use_smart_wallet: bool = False
    smart_wallet_contract_id: Optional[str] = None

    @property
    def routes_through_vault(self) -> bool:
        return self.use_smart_wallet and bool(self.smart_wallet_contract_id)


class Rule(BaseModel):
    """지오펜스 + 컨트랙트 함수 + 인가 정책"""
    id: int = Field(ge=1)
    contract_id: int
    rule_name: str = ""
    rule_type: RuleType = "location"
    geofence: Optional[Geofence] = None
    geofence_id: Optional[int] = None
    function_name: str = Field(min_length=1)
    function_parameters: Dict[str, ParameterValue] = Field(default_factory=dict)
    trigger_on: TriggerOn = "enter"
    is_active: bool = True
    target_wallet_public_key: Optional[str] = None
    quorum: QuorumPolicy = Field(default_factory=QuorumPolicy)
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    dwell: DwellPolicy = Field(default_factory=DwellPolicy)
    balance: BalancePolicy = Field(default_factory=BalancePolicy)

    @model_validator(mode="after")
    def _check_geofence(self) -> "Rule":
        if self.rule_type in CIRCLE_RULE_TYPES and self.geofence is None:
            raise ValueError(f"rule_type '{self.rule_type}' requires center coordinates and a radius")
        if self.rule_type == "geofence" and self.geofence is None and self.geofence_id is None:
            raise ValueError("rule_type 'geofence' requires a geofence")
        return self


class MatchKey(NamedTuple):
    """매치 이벤트 식별 튜플 (멱등성 키)"""
    rule_id: int
    matched_public_key: str
    update_id: Optional[int]
    position: Optional[int]

    def as_string(self) -> str:
        if self.update_id is not None:
            tail = str(self.update_id)
        else:
            tail = f"pos{self.position or 0}"
        return f"{self.rule_id}_{self.matched_public_key}_{tail}"


class MatchEvent(BaseModel):
    """지갑 위치가 규칙 조건을 만족했다는 관측 (Pending Rule)"""
    rule_id: int = Field(ge=1)
    matched_public_key: str = Field(min_length=1)
    matched_at: datetime
    location: Optional[Location] = None
    update_id: Optional[int] = None
    function_parameters: Dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    position: int = 0
    location_duration_seconds: Optional[float] = None
    state: LifecycleState = "pending"

    @property
    def key(self) -> MatchKey:
        position = None if self.update_id is not None else self.position
        return MatchKey(self.rule_id, self.matched_public_key, self.update_id, position)

    @property
    def observation_key(self) -> str:
        return observation_key(self.rule_id, self.matched_public_key, self.update_id, self.matched_at.isoformat())


def observation_key(rule_id: Any, matched_public_key: Any, update_id: Any, matched_at: Any) -> str:
    """
    저장소 중복 제거용 관측 키.

    update_id가 없으면 목록 위치 대신 매치 시각으로 관측을 구분합니다.
    """
    tail = str(update_id) if update_id is not None else f"at{matched_at}"
    return f"{rule_id}_{matched_public_key}_{tail}"


def completion_key(rule_id: int, transaction_hash: Optional[str],
                   update_id: Optional[int], matched_public_key: str) -> str:
    """완료 기록 중복 제거 키"""
    tx = transaction_hash or "no-tx"
    update = str(update_id) if update_id is not None else "no-update"
    return f"{rule_id}_{tx}_{update}_{matched_public_key}"


class CompletionRecord(BaseModel):
    """완료된 매치 이벤트 기록"""
    rule_id: int
    matched_public_key: str
    update_id: Optional[int] = None
    transaction_hash: Optional[str] = None
    completed_at: datetime

    @property
    def dedup_key(self) -> str:
        return completion_key(self.rule_id, self.transaction_hash, self.update_id, self.matched_public_key)


class Credential(BaseModel):
    """등록된 패스키 자격 증명"""
    credential_id: str = Field(min_length=1)
    public_key_material: str = Field(min_length=1)
    is_registered_on_chain: bool = False


class WebAuthnProof(BaseModel):
    """하나의 서명 페이로드에 한정된 패스키 증명"""
    model_config = ConfigDict(frozen=True)

    credential_id: str
    public_key_material: str
    signature: str
    authenticator_data: str
    client_data: str
    signed_payload: str

    def covers(self, payload: str) -> bool:
        return self.signed_payload == payload

    def as_parameters(self) -> Dict[str, str]:
        return {
            "signature_payload": self.signed_payload,
            "webauthn_signature": self.signature,
            "webauthn_authenticator_data": self.authenticator_data,
            "webauthn_client_data": self.client_data,
        }


class SecretKeyProof(BaseModel):
    """비밀 키 서명 자료"""
    model_config = ConfigDict(frozen=True)

    identity: str
    signing_material: str = Field(repr=False)


AuthorizationProof = Union[SecretKeyProof, WebAuthnProof]


@dataclass(frozen=True)
class Proof:
    proof: WebAuthnProof
    ok: bool = True


@dataclass(frozen=True)
class AuthDenied:
    reason: str
    ok: bool = False


@dataclass(frozen=True)
class AuthTimeout:
    timeout_sec: float
    ok: bool = False


AuthResult = Union[Proof, AuthDenied, AuthTimeout]


class ContractCallRequest(BaseModel):
    """일반 컨트랙트 함수 실행 요청"""
    contract_id: int
    function_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    identity: str
    signing_material: Optional[str] = Field(default=None, repr=False)
    submit_to_ledger: bool = True
    rule_id: int
    update_id: Optional[int] = None
    matched_public_key: Optional[str] = None
    proof: Optional[WebAuthnProof] = None


class VaultPaymentRequest(BaseModel):
    """스마트 월렛(볼트) 결제 요청"""
    identity: str
    signing_material: Optional[str] = Field(default=None, repr=False)
    destination: str
    amount: str
    asset: str = "native"
    proof: WebAuthnProof
    rule_id: int


class ExecutionOutcome(BaseModel):
    """실행 서비스 응답"""
    success: bool
    transaction_hash: Optional[str] = None
    error: Optional[str] = None
    simulated: bool = False


class QuorumStatus(BaseModel):
    """쿼럼 평가 결과"""
    met: bool
    in_range: FrozenSet[str] = frozenset()
    out_of_range: FrozenSet[str] = frozenset()
    minimum_required: int = 0
    message: str = ""

    @property
    def count_in_range(self) -> int:
        return len(self.in_range)


class GateDecision(BaseModel):
    """실행 허용 여부 판단 결과"""
    admitted: bool
    reason: Optional[str] = None
    message: str = ""

    def __bool__(self) -> bool:
        return self.admitted


@dataclass
class Credentials:
    """호출자가 제공하는 서명 자료 (영속화하지 않음)"""
    identity: str
    secret_key: Optional[str] = field(default=None, repr=False)


@dataclass
class RuleMatch:
    """실행 대상: 규칙 + 컨트랙트 + 매치 이벤트"""
    rule: Rule
    contract: ContractRef
    event: MatchEvent

    @property
    def key(self) -> MatchKey:
        return self.event.key


@dataclass
class BatchItemError:
    """배치 항목별 실패 사유"""
    key: str
    rule_id: int
    category: str
    reason: str
    message: str


@dataclass
class BatchReport:
    """배치 실행 요약"""
    success_count: int = 0
    fail_count: int = 0
    per_item_errors: List[BatchItemError] = field(default_factory=list)
    outcomes: Dict[str, ExecutionOutcome] = field(default_factory=dict)

    @property
    def summary(self) -> str:
        return f"{self.success_count} succeeded, {self.fail_count} failed"
