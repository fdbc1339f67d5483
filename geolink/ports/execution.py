"""
Execution service port interface.

This module defines the protocol for submitting contract calls.
"""

from typing import Protocol
from geolink.core.models import ContractCallRequest, ExecutionOutcome, VaultPaymentRequest

class ExecutionPort(Protocol):
    """실행 서비스 포트 인터페이스"""

    async def execute_contract_call(self, request: ContractCallRequest) -> ExecutionOutcome:
        """
        일반 컨트랙트 함수 실행을 제출합니다.

        Args:
            request: 함수 이름, 해석된 파라미터, 서명 자료를 담은 요청

        Returns:
            실행 결과

        Raises:
            SubmissionError: 서비스 거부 또는 네트워크 실패
        """
        ...

    async def execute_vault_payment(self, request: VaultPaymentRequest) -> ExecutionOutcome:
        """
        스마트 월렛(볼트) 경유 결제를 제출합니다.

        Raises:
            SubmissionError: 서비스 거부 또는 네트워크 실패
        """
        ...
