"""
Normalization functions for the GeoLink rule engine.

This module contains pure functions for converting raw platform payloads
into internal domain models. Pydantic failures are re-raised as
ValidationError so malformed input never reaches a network call.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import validate
from jsonschema.exceptions import ValidationError as SchemaValidationError
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import (
    BalancePolicy, CompletionRecord, ContractRef, Credential, DwellPolicy,
    ExecutionOutcome, Geofence, Location, MatchEvent, QuorumPolicy,
    RateLimitPolicy, Rule,
)
from .parameters import parse_template
from geolink.observability.logging_setup import get_logger

log = get_logger("geolink.normalize")

_NUMERIC = {"type": ["number", "string", "null"]}

# 수집 포트로 들어오는 매치 페이로드의 최소 형태
MATCH_EVENT_SCHEMA = {
    "type": "object",
    "required": ["rule_id"],
    "properties": {
        "rule_id": {"type": ["integer", "string"]},
        "update_id": {"type": ["integer", "string", "null"]},
        "matched_public_key": {"type": ["string", "null"]},
        "public_key": {"type": ["string", "null"]},
        "location": {
            "type": ["object", "null"],
            "properties": {"latitude": _NUMERIC, "longitude": _NUMERIC},
        },
        "latitude": _NUMERIC,
        "longitude": _NUMERIC,
        "location_duration_seconds": _NUMERIC,
        "function_parameters": {"type": ["object", "string", "null"]},
        "message": {"type": ["string", "null"]},
    },
}


def _json_field(value: Any, default: Any) -> Any:
    """문자열로 저장된 JSON 컬럼을 파싱합니다."""
    if value is None:
        return default
    if isinstance(value, str):
        if not value.strip():
            return default
        try:
            return json.loads(value)
        except ValueError as e:
            raise ValidationError(f"malformed JSON field: {e}", reason="malformed_json") from e
    return value


def _float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"not a number: {value!r}", reason="malformed_number") from e


def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"not an integer: {value!r}", reason="malformed_number") from e


def _datetime(value: Any) -> datetime:
    """ISO 문자열/epoch 값을 UTC datetime으로 변환합니다."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        # 밀리초 epoch 허용
        seconds = value / 1000 if value > 1e11 else value
        dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"malformed timestamp: {value!r}", reason="malformed_timestamp") from e
    else:
        raise ValidationError("timestamp is required", reason="missing_timestamp")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _mapping_parameters(raw: Mapping[str, Any], function_name: str) -> Dict[str, Any]:
    """
    컨트랙트 function_mappings에서 함수의 파라미터 매핑을 꺼냅니다.

    {"fn": {"parameters": [{"name": "x", "mapped_from": "latitude"}]}} 형태를
    {"x": {"mapped_from": "latitude"}} 로 바꿉니다.
    """
    mappings = _json_field(raw.get("function_mappings"), {}) or {}
    entry = mappings.get(function_name) if isinstance(mappings, Mapping) else None
    if not isinstance(entry, Mapping):
        return {}
    result: Dict[str, Any] = {}
    for param in entry.get("parameters") or []:
        if isinstance(param, Mapping) and param.get("name"):
            result[param["name"]] = {"mapped_from": param.get("mapped_from")}
    return result


def _wallet_set(value: Any) -> frozenset:
    wallets = _json_field(value, []) or []
    if not isinstance(wallets, (list, tuple, set, frozenset)):
        raise ValidationError("required_wallet_public_keys must be a list", reason="malformed_quorum")
    return frozenset(str(w) for w in wallets if w)


def to_rule(raw: Mapping[str, Any]) -> Rule:
    """
    원시 규칙 데이터를 Rule 모델로 변환합니다.

    Args:
        raw: 규칙 API 응답 또는 저장된 규칙 레코드

    Returns:
        검증된 Rule

    Raises:
        ValidationError: 필수 필드 누락, 쿼럼 설정 불일치 등
    """
    try:
        function_name = str(raw.get("function_name") or "")
        geofence = None
        lat = _float(raw.get("center_latitude"))
        lon = _float(raw.get("center_longitude"))
        radius = _float(raw.get("radius_meters"))
        if lat is not None and lon is not None and radius is not None:
            geofence = Geofence(latitude=lat, longitude=lon, radius_m=radius)

        template = parse_template(
            _json_field(raw.get("function_parameters"), {}),
            _mapping_parameters(raw, function_name),
        )

        required = _wallet_set(raw.get("required_wallet_public_keys"))
        quorum = QuorumPolicy(
            required_wallet_public_keys=required,
            minimum_wallet_count=_int(raw.get("minimum_wallet_count")) if required else None,
            quorum_type=raw.get("quorum_type") or "any",
        )

        return Rule(
            id=_int(raw.get("id") if raw.get("id") is not None else raw.get("rule_id")),
            contract_id=_int(raw.get("contract_id")),
            rule_name=raw.get("rule_name") or "",
            rule_type=raw.get("rule_type") or "location",
            geofence=geofence,
            geofence_id=_int(raw.get("geofence_id")),
            function_name=function_name,
            function_parameters=template,
            trigger_on=raw.get("trigger_on") or "enter",
            is_active=bool(raw.get("is_active", True)),
            target_wallet_public_key=raw.get("target_wallet_public_key"),
            quorum=quorum,
            rate_limit=RateLimitPolicy(
                max_executions_per_public_key=_int(raw.get("max_executions_per_public_key")),
                execution_time_window_seconds=_int(raw.get("execution_time_window_seconds")),
            ),
            dwell=DwellPolicy(min_location_duration_seconds=_int(raw.get("min_location_duration_seconds"))),
            balance=BalancePolicy(
                auto_deactivate_on_balance_threshold=bool(raw.get("auto_deactivate_on_balance_threshold", False)),
                balance_threshold_xlm=_float(raw.get("balance_threshold_xlm")),
                balance_check_asset_address=raw.get("balance_check_asset_address"),
                use_smart_wallet_balance=bool(raw.get("use_smart_wallet_balance", False)),
            ),
        )
    except PydanticValidationError as e:
        log.warning("rule rejected during normalization", rule_id=raw.get("id"), errors=e.error_count())
        raise ValidationError(f"invalid rule: {e}", reason="invalid_rule") from e


def to_contract(raw: Mapping[str, Any]) -> ContractRef:
    """원시 컨트랙트 데이터를 ContractRef로 변환합니다."""
    try:
        return ContractRef(
            id=_int(raw.get("id") if raw.get("id") is not None else raw.get("contract_id")),
            contract_address=raw.get("contract_address") or "",
            contract_name=raw.get("contract_name") or "",
            requires_webauthn=bool(raw.get("requires_webauthn", False)),
            use_smart_wallet=bool(raw.get("use_smart_wallet", False)),
            smart_wallet_contract_id=raw.get("smart_wallet_contract_id") or None,
        )
    except PydanticValidationError as e:
        raise ValidationError(f"invalid contract: {e}", reason="invalid_contract") from e


def to_match_event(raw: Mapping[str, Any], position: int = 0, state: str = "pending") -> MatchEvent:
    """
    원시 매치 데이터(Pending Rule)를 MatchEvent로 변환합니다.

    Args:
        raw: 매치 이벤트 원시 데이터
        position: update_id가 없을 때 식별에 쓰이는 목록 내 위치
        state: 수명 주기 상태
    """
    try:
        validate(instance=dict(raw), schema=MATCH_EVENT_SCHEMA)
    except SchemaValidationError as e:
        log.warning(f"match payload schema validation failed: {e.message}")
        raise ValidationError(f"invalid match event: {e.message}", reason="invalid_match_event") from e

    try:
        location = None
        loc = raw.get("location") or {}
        lat = _float(loc.get("latitude") if isinstance(loc, Mapping) else None)
        lon = _float(loc.get("longitude") if isinstance(loc, Mapping) else None)
        if lat is None or lon is None:
            lat = _float(raw.get("latitude"))
            lon = _float(raw.get("longitude"))
        if lat is not None and lon is not None:
            location = Location(latitude=lat, longitude=lon)

        matched_at = raw.get("matched_at") or raw.get("received_at") or raw.get("completed_at") \
            or raw.get("rejected_at")

        return MatchEvent(
            rule_id=_int(raw.get("rule_id")),
            matched_public_key=str(raw.get("matched_public_key") or raw.get("public_key") or ""),
            matched_at=_datetime(matched_at),
            location=location,
            update_id=_int(raw.get("update_id")),
            function_parameters=_json_field(raw.get("function_parameters"), {}) or {},
            message=raw.get("message") or "",
            position=position,
            location_duration_seconds=_float(raw.get("location_duration_seconds")),
            state=state,
        )
    except PydanticValidationError as e:
        raise ValidationError(f"invalid match event: {e}", reason="invalid_match_event") from e


def to_match_events(raws: List[Mapping[str, Any]], state: str = "pending") -> List[MatchEvent]:
    return [to_match_event(raw, position=i, state=state) for i, raw in enumerate(raws)]


def to_credential(raw: Mapping[str, Any]) -> Credential:
    """패스키 목록 항목을 Credential로 변환합니다."""
    try:
        return Credential(
            credential_id=raw.get("credentialId") or raw.get("credential_id") or "",
            public_key_material=raw.get("publicKey") or raw.get("public_key_material")
            or raw.get("public_key_spki") or "",
            is_registered_on_chain=bool(raw.get("isOnContract") or raw.get("is_registered_on_chain")),
        )
    except PydanticValidationError as e:
        raise ValidationError(f"invalid credential: {e}", reason="invalid_credential") from e


def to_outcome(raw: Mapping[str, Any]) -> ExecutionOutcome:
    """실행 서비스 응답을 ExecutionOutcome으로 변환합니다."""
    tx = raw.get("transaction_hash") or raw.get("transactionHash") or raw.get("hash")
    error = None if raw.get("success", False) else (raw.get("error") or raw.get("message"))
    return ExecutionOutcome(
        success=bool(raw.get("success", False)),
        transaction_hash=tx or None,
        error=error,
        simulated=bool(raw.get("simulated", False)),
    )


def to_completion_record(raw: Mapping[str, Any]) -> CompletionRecord:
    """완료 목록 항목을 CompletionRecord로 변환합니다."""
    try:
        return CompletionRecord(
            rule_id=_int(raw.get("rule_id")),
            matched_public_key=str(raw.get("matched_public_key") or raw.get("public_key") or ""),
            update_id=_int(raw.get("update_id")),
            transaction_hash=raw.get("transaction_hash") or None,
            completed_at=_datetime(raw.get("completed_at") or raw.get("matched_at")),
        )
    except PydanticValidationError as e:
        raise ValidationError(f"invalid completion record: {e}", reason="invalid_completion") from e
