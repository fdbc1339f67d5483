"""
Credential service port interface.

This module defines the protocol for passkey credentials and proofs.
"""

from typing import List, Protocol
from geolink.core.models import Credential, WebAuthnProof

class CredentialPort(Protocol):
    """자격 증명 서비스 포트 인터페이스"""

    async def list_credentials(self, identity: str) -> List[Credential]:
        """
        지갑에 등록된 패스키 목록을 조회합니다.

        Args:
            identity: 지갑 공개키
        """
        ...

    async def request_proof(self, credential: Credential, payload: str) -> WebAuthnProof:
        """
        페이로드에 대한 패스키 증명을 요청합니다.

        사용자 승인을 기다리므로 임의로 오래 걸릴 수 있습니다.

        Raises:
            AuthorizationError: 사용자가 거부한 경우
        """
        ...

    async def register_credential(self, identity: str, secret_key: str, public_key_material: str) -> bool:
        """
        패스키를 컨트랙트에 서명자로 등록합니다.

        Returns:
            등록 성공 여부
        """
        ...
