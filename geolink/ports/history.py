"""
Execution history port interface.
"""

from datetime import datetime
from typing import List, Protocol

class ExecutionHistoryPort(Protocol):
    """규칙/지갑별 실행 기록 포트 인터페이스"""

    async def record(self, rule_id: int, identity: str, executed_at: datetime) -> None:
        ...

    async def timestamps(self, rule_id: int, identity: str, since: datetime) -> List[datetime]:
        """since 이후의 실행 시각 목록"""
        ...
