"""
Cooperative cancellation for batch execution.
"""

import asyncio
from typing import Optional


class CancellationToken:
    """배치 단위 취소 토큰"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        """
        취소를 요청합니다. 여러 번 호출해도 첫 사유가 유지됩니다.

        Args:
            reason: 취소 사유
        """
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """취소될 때까지 대기합니다."""
        await self._event.wait()
