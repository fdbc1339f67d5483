"""
Rule lifecycle store port interface.

Tracks each match event through pending, completed and rejected states.
"""

from typing import List, Optional, Protocol
from geolink.core.models import CompletionRecord, MatchEvent

class LifecycleStorePort(Protocol):
    """규칙 수명 주기 저장소 포트 인터페이스"""

    async def mark_pending(self, event: MatchEvent) -> bool:
        """
        매치 이벤트를 대기 상태로 추가합니다. 같은 식별 튜플은 무시됩니다.

        Returns:
            새로 추가되었으면 True
        """
        ...

    async def complete(self, rule_id: int, matched_public_key: str,
                       update_id: Optional[int], transaction_hash: Optional[str]) -> bool:
        """
        매치 이벤트를 완료 상태로 전환합니다. 두 번 호출해도 안전해야 합니다.

        Returns:
            대기 중인 이벤트가 전환되었으면 True (이미 종료된 경우 False)

        Raises:
            ValidationError: 식별 튜플이 잘못된 경우
        """
        ...

    async def reject(self, rule_id: int, matched_public_key: str,
                     update_id: Optional[int] = None) -> bool:
        """매치 이벤트를 거부 상태로 전환합니다 (되돌릴 수 없음)."""
        ...

    async def list_pending(self) -> List[MatchEvent]:
        ...

    async def list_completed(self) -> List[CompletionRecord]:
        """중복 제거 키를 적용한 완료 목록"""
        ...

    async def list_rejected(self) -> List[MatchEvent]:
        ...
