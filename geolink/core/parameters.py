"""
Function-parameter templates for GeoLink rules.

Raw rule JSON is parsed once into a tagged union of literal values and
system placeholders. Resolution against a match context is a pure function.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional

from .models import (
    LiteralValue, ParameterValue, SystemPlaceholder, WebAuthnProof, PROOF_SOURCES,
)

SYSTEM_MARKER = "system-generated"

DESTINATION_KEYS = ("destination", "recipient", "to", "to_address", "destination_address")
AMOUNT_KEYS = ("amount", "value", "quantity")
ASSET_KEYS = ("asset", "asset_address", "token")

# mapped_from 값 -> 플레이스홀더 소스
MAPPED_SOURCES = {
    "latitude": "latitude",
    "longitude": "longitude",
    "user_public_key": "matched_public_key",
    "matched_public_key": "matched_public_key",
}

# 키 이름으로 소스를 추정할 때 사용하는 힌트 (system-generated 값에 한함)
_KEY_HINTS = (
    (("lat",), "latitude"),
    (("lon", "lng"), "longitude"),
    (("timestamp", "matched_at", "time"), "matched_at"),
    (("rule_id",), "rule_id"),
)


def is_system_marker(value: Any) -> bool:
    return isinstance(value, str) and SYSTEM_MARKER in value.lower()


def _source_for_key(key: str) -> str:
    """system-generated 값이 들어있는 키에 대응하는 플레이스홀더 소스를 결정합니다."""
    lowered = key.lower()
    if lowered in PROOF_SOURCES:
        return lowered
    for hints, source in _KEY_HINTS:
        if any(h in lowered for h in hints):
            return source
    return "matched_public_key"


def parse_template(raw: Optional[Mapping[str, Any]],
                   mappings: Optional[Mapping[str, Any]] = None) -> Dict[str, ParameterValue]:
    """
    원시 함수 파라미터를 템플릿으로 변환합니다.

    Args:
        raw: 규칙에 저장된 function_parameters
        mappings: 함수 매핑 정보 ({key: {"mapped_from": ...}})

    Returns:
        키 -> LiteralValue | SystemPlaceholder
    """
    template: Dict[str, ParameterValue] = {}
    mappings = mappings or {}

    for key, value in (raw or {}).items():
        if isinstance(value, Mapping) and value.get("kind") in ("literal", "system"):
            # 이미 태그된 값
            if value["kind"] == "system":
                template[key] = SystemPlaceholder(source=value["source"])
            else:
                template[key] = LiteralValue(value=value.get("value"))
        elif key in PROOF_SOURCES:
            template[key] = SystemPlaceholder(source=key)
        elif is_system_marker(value):
            template[key] = SystemPlaceholder(source=_source_for_key(key))
        elif key in DESTINATION_KEYS and (value is None or value == ""):
            template[key] = SystemPlaceholder(source="matched_public_key")
        elif key in ("latitude", "longitude") and value in (None, "", 0):
            template[key] = SystemPlaceholder(source=key)
        else:
            template[key] = LiteralValue(value=value)

    for key, mapping in mappings.items():
        mapped_from = mapping.get("mapped_from") if isinstance(mapping, Mapping) else None
        source = MAPPED_SOURCES.get(mapped_from or "")
        if source is None:
            continue
        current = template.get(key)
        # 명시된 리터럴 값이 있으면 매핑보다 우선
        if isinstance(current, LiteralValue) and current.value not in (None, ""):
            continue
        template[key] = SystemPlaceholder(source=source)

    return template


@dataclass(frozen=True)
class ResolutionContext:
    """플레이스홀더 해석에 필요한 값"""
    rule_id: int
    matched_public_key: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    matched_at: Optional[datetime] = None
    proof: Optional[WebAuthnProof] = None

    def value_for(self, source: str) -> Any:
        if source == "matched_public_key":
            return self.matched_public_key
        if source == "latitude":
            return self.latitude
        if source == "longitude":
            return self.longitude
        if source == "matched_at":
            return self.matched_at.isoformat() if self.matched_at else None
        if source == "rule_id":
            return self.rule_id
        if self.proof is not None:
            return self.proof.as_parameters()[source]
        return None


def resolve(template: Mapping[str, ParameterValue], context: ResolutionContext) -> Dict[str, Any]:
    """
    템플릿을 실제 파라미터로 해석합니다.

    증명이 없는 컨텍스트에서는 증명 필드를 결과에서 제외합니다.
    서명 페이로드는 증명 필드 없이 구성되고, 제출 시점에 증명이 합쳐집니다.
    """
    resolved: Dict[str, Any] = {}
    for key, value in template.items():
        if isinstance(value, LiteralValue):
            resolved[key] = value.value
            continue
        if value.from_proof and context.proof is None:
            continue
        resolved[key] = context.value_for(value.source)
    return resolved


def overlay_event_parameters(resolved: Dict[str, Any], event_parameters: Mapping[str, Any]) -> Dict[str, Any]:
    """매치 이벤트에 이미 채워진 구체적인 값을 덮어씁니다."""
    merged = dict(resolved)
    for key, value in event_parameters.items():
        if key in PROOF_SOURCES or value is None or value == "" or is_system_marker(value):
            continue
        merged[key] = value
    return merged


def has_webauthn_fields(keys: Iterable[str]) -> bool:
    """템플릿에 WebAuthn 형태의 필드가 포함되어 있는지 확인합니다."""
    for key in keys:
        lowered = key.lower()
        if lowered in PROOF_SOURCES or "webauthn" in lowered:
            return True
        if "authenticator_data" in lowered or "client_data" in lowered:
            return True
    return False


def first_present(params: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = params.get(key)
        if value is not None and value != "":
            return value
    return None
