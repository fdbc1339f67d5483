"""
Match ingest port interface.

This module defines the protocol for receiving match events from the
external location pipeline.
"""

from typing import AsyncIterator, Protocol

class MatchIngestPort(Protocol):
    """매치 이벤트 수집 포트 인터페이스"""

    def recv(self) -> AsyncIterator[dict]:
        """
        원시 매치 이벤트를 비동기적으로 수신합니다.

        Yields:
            원시 딕셔너리 데이터
        """
        ...
