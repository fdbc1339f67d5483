"""
Rate and dwell-time gate.

Decides whether a match event may enter the pending list. The rate window
trails and ends at the evaluation instant.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .models import GateDecision, Rule


def count_in_window(timestamps: Iterable[datetime], window_seconds: int, now: datetime) -> int:
    """now를 끝으로 하는 구간 안의 실행 횟수를 셉니다."""
    start = now - timedelta(seconds=window_seconds)
    return sum(1 for ts in timestamps if start < ts <= now)


def check_rate(rule: Rule, history: Iterable[datetime], now: Optional[datetime] = None) -> GateDecision:
    """지갑별 실행 횟수 제한만 평가합니다 (수집 시점과 제출 직전 모두 사용)."""
    if not rule.rate_limit.enabled:
        return GateDecision(admitted=True)
    now = now or datetime.now(timezone.utc)
    limit = rule.rate_limit.max_executions_per_public_key
    window = rule.rate_limit.execution_time_window_seconds
    if count_in_window(history, window, now) >= limit:
        return GateDecision(
            admitted=False,
            reason="rate_limit_exceeded",
            message=f"Maximum executions per time window reached ({limit} per {window} seconds)",
        )
    return GateDecision(admitted=True)


def admit(rule: Rule, identity: str, history: Iterable[datetime], *,
          dwell_seconds: Optional[float] = None,
          now: Optional[datetime] = None) -> GateDecision:
    """
    매치 이벤트의 실행 허용 여부를 판단합니다.

    Args:
        rule: 대상 규칙
        identity: 매치된 지갑 공개키
        history: 해당 규칙/지갑의 과거 실행 시각
        dwell_seconds: 외부 위치 파이프라인이 제공한 연속 체류 시간
        now: 평가 시각 (기본값: 현재 UTC)

    Returns:
        GateDecision
    """
    if not rule.is_active:
        return GateDecision(admitted=False, reason="rule_inactive",
                            message=f"Rule {rule.id} is inactive")

    rate = check_rate(rule, history, now)
    if not rate:
        return rate

    if rule.dwell.enabled:
        required = rule.dwell.min_location_duration_seconds
        if dwell_seconds is None or dwell_seconds < required:
            return GateDecision(
                admitted=False,
                reason="insufficient_location_duration",
                message=(
                    f"Public key has not been at location long enough to trigger execution "
                    f"(requires {required} seconds)"
                ),
            )

    return GateDecision(admitted=True, message=f"admitted for {identity}")
