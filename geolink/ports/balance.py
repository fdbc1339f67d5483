"""
Balance source port interface.
"""

from typing import Optional, Protocol

class BalancePort(Protocol):
    """잔액 조회 포트 인터페이스"""

    async def get_balance(self, identity: str, *, asset: Optional[str] = None,
                          smart_wallet_contract_id: Optional[str] = None) -> float:
        """
        잔액을 XLM 단위로 조회합니다.

        Args:
            identity: 지갑 공개키
            asset: 자산 주소 (None이면 native)
            smart_wallet_contract_id: 지정되면 볼트 잔액을 조회
        """
        ...
