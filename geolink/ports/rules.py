"""
Rule persistence port interface.
"""

from typing import FrozenSet, List, Protocol
from geolink.core.models import ContractRef, Rule

class RulePort(Protocol):
    """규칙 저장소 포트 인터페이스"""

    async def get_rule(self, rule_id: int) -> Rule:
        """
        규칙을 조회합니다.

        Raises:
            KeyError: 규칙이 없는 경우
        """
        ...

    async def get_contract(self, contract_id: int) -> ContractRef:
        ...

    async def list_rules(self) -> List[Rule]:
        ...

    async def wallets_in_range(self, rule_id: int) -> FrozenSet[str]:
        """규칙 지오펜스 안에 현재 있는 지갑 공개키"""
        ...

    async def deactivate_rule(self, rule_id: int) -> None:
        ...
