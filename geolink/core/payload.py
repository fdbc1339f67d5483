"""
Canonical signed payloads.

The payload a passkey signs must be rebuilt byte-for-byte at submission
time, so construction is a pure function of its inputs and serialization
uses a fixed key order and separators.
"""

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping

from .errors import ValidationError
from .parameters import AMOUNT_KEYS, ASSET_KEYS, DESTINATION_KEYS, first_present

PAYMENT_NAME_PATTERNS = ("transfer", "payment", "send", "pay", "withdraw", "deposit")
READ_ONLY_PREFIXES = ("get_", "is_", "has_", "check_", "query_", "view_", "read_", "fetch_")


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def now_ms() -> int:
    return int(time.time() * 1000)


def is_read_only(function_name: str) -> bool:
    return function_name.lower().startswith(READ_ONLY_PREFIXES)


def is_payment_function(function_name: str, parameter_keys: Iterable[str] = ()) -> bool:
    """
    결제 형태의 함수인지 판단합니다.

    함수 이름에 결제 패턴이 있거나, 파라미터에 목적지/금액 키가 함께 있으면 결제로 봅니다.
    """
    lowered = function_name.lower()
    if any(p in lowered for p in PAYMENT_NAME_PATTERNS):
        return True
    keys = {k.lower() for k in parameter_keys}
    return bool(keys.intersection(DESTINATION_KEYS)) and bool(keys.intersection(AMOUNT_KEYS))


@dataclass(frozen=True)
class PaymentFields:
    """결제 페이로드 필드"""
    destination: str
    amount: str
    asset: str = "native"
    memo: str = ""


def payment_fields(parameters: Mapping[str, Any]) -> PaymentFields:
    """
    해석된 파라미터에서 결제 필드를 추출합니다.

    Raises:
        ValidationError: 목적지 또는 금액이 없는 경우
    """
    destination = first_present(parameters, DESTINATION_KEYS)
    amount = first_present(parameters, AMOUNT_KEYS)
    if destination is None:
        raise ValidationError("payment destination could not be resolved", reason="missing_destination")
    if amount is None:
        raise ValidationError("payment amount could not be resolved", reason="missing_amount")
    asset = first_present(parameters, ASSET_KEYS) or "native"
    memo = parameters.get("memo") or ""
    return PaymentFields(destination=str(destination), amount=str(amount), asset=str(asset), memo=str(memo))


def payment_payload(*, source: str, fields: PaymentFields, timestamp: int) -> str:
    return canonical_json({
        "source": source,
        "destination": fields.destination,
        "amount": fields.amount,
        "asset": fields.asset,
        "memo": fields.memo,
        "timestamp": timestamp,
    })


def function_payload(*, function_name: str, contract_id: Any, parameters: Mapping[str, Any], timestamp: int) -> str:
    return canonical_json({
        "function": function_name,
        "contract_id": contract_id,
        "parameters": dict(parameters),
        "timestamp": timestamp,
    })


def build_signed_payload(*, function_name: str, contract_id: Any, parameters: Mapping[str, Any],
                         source: str, timestamp: int, payment: bool) -> str:
    """
    서명 대상 페이로드 문자열을 생성합니다.

    Args:
        function_name: 컨트랙트 함수 이름
        contract_id: 컨트랙트 주소 또는 ID
        parameters: 증명 필드를 제외하고 해석된 파라미터
        source: 서명하는 지갑 공개키
        timestamp: 밀리초 타임스탬프 (배치에서는 고정)
        payment: 결제 형태 여부
    """
    if payment:
        return payment_payload(source=source, fields=payment_fields(parameters), timestamp=timestamp)
    return function_payload(function_name=function_name, contract_id=contract_id,
                            parameters=parameters, timestamp=timestamp)


def extract_timestamp(signed_payload: str) -> int:
    """서명된 페이로드에서 타임스탬프를 꺼냅니다."""
    try:
        data: Dict[str, Any] = json.loads(signed_payload)
        return int(data["timestamp"])
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationError(f"signed payload has no usable timestamp: {e}", reason="bad_signed_payload") from e
