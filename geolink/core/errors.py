"""
Error taxonomy for the GeoLink rule engine.

Every failure the engine surfaces to its caller is one of these types.
"""

from typing import Optional


class EngineError(Exception):
    """엔진 오류 기본 클래스"""

    category = "engine"

    def __init__(self, message: str, *, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.category

    def to_dict(self) -> dict:
        return {"category": self.category, "reason": self.reason, "error": self.message}


class ValidationError(EngineError):
    """규칙/이벤트 형식 오류 (네트워크 호출 전에 거부)"""

    category = "validation"


class AuthorizationError(EngineError):
    """자격 증명, 패스키 증명, 비밀 키 관련 오류"""

    category = "authorization"


class SubmissionError(EngineError):
    """실행 서비스 거부 또는 네트워크 실패"""

    category = "submission"


class ReconciliationError(EngineError):
    """온체인 성공 후 완료 기록 호출 실패 (사용자에게 노출하지 않음)"""

    category = "reconciliation"

    def __init__(self, message: str, *, rule_id: int, matched_public_key: str,
                 transaction_hash: Optional[str]):
        super().__init__(message, reason="completion_failed")
        self.rule_id = rule_id
        self.matched_public_key = matched_public_key
        self.transaction_hash = transaction_hash


# 실행 서비스 메시지 중 인가 실패로 분류할 표현
_AUTHORIZATION_MARKERS = (
    "mismatch",
    "does not match",
    "not registered",
    "invalid secret key",
    "secret key is required",
    "signature verification",
)


def classify_failure(message: str, status: Optional[int] = None) -> EngineError:
    """
    실행 서비스 실패를 오류 타입으로 분류합니다.

    Args:
        message: 서비스가 반환한 오류 메시지
        status: HTTP 상태 코드

    Returns:
        AuthorizationError 또는 SubmissionError
    """
    lowered = (message or "").lower()
    if status in (401, 403) or any(marker in lowered for marker in _AUTHORIZATION_MARKERS):
        return AuthorizationError(message, reason="identity_mismatch")
    reason = f"http_{status}" if status else "rejected"
    return SubmissionError(message or "execution service rejected the request", reason=reason)
