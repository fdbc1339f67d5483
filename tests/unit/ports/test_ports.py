"""
Port 모듈 단위 테스트

이 모듈은 어댑터와 테스트용 가짜 구현이 포트 인터페이스를 모두 구현하는지 확인합니다.
"""

import inspect

import pytest

from conftest import FakeCredentialService, FakeExecutionService, FakeRuleStore
from geolink.adapters.geolink_api import GeoLinkClient
from geolink.adapters.storage import SQLiteExecutionHistory, SQLiteLifecycleStore
from geolink.ports import (
    BalancePort, CredentialPort, ExecutionHistoryPort, ExecutionPort, LifecycleStorePort,
    MatchIngestPort, RulePort,
)


def port_methods(port):
    """Protocol에 선언된 메서드 이름"""
    return {name for name, member in vars(port).items()
            if inspect.isfunction(member) and not name.startswith("_")}


@pytest.mark.parametrize("port,implementation", [
    (ExecutionPort, GeoLinkClient),
    (CredentialPort, GeoLinkClient),
    (RulePort, GeoLinkClient),
    (BalancePort, GeoLinkClient),
    (LifecycleStorePort, GeoLinkClient),
    (MatchIngestPort, GeoLinkClient),
    (LifecycleStorePort, SQLiteLifecycleStore),
    (ExecutionHistoryPort, SQLiteExecutionHistory),
    (ExecutionPort, FakeExecutionService),
    (CredentialPort, FakeCredentialService),
    (RulePort, FakeRuleStore),
    (BalancePort, FakeRuleStore),
])
def test_implementation_covers_port(port, implementation):
    """구현체가 포트의 모든 메서드를 제공"""
    missing = port_methods(port) - set(dir(implementation))
    assert not missing, f"{implementation.__name__} is missing {sorted(missing)}"


@pytest.mark.parametrize("port", [BalancePort, CredentialPort, ExecutionHistoryPort, ExecutionPort,
                                  LifecycleStorePort, RulePort])
def test_port_methods_are_async(port):
    for name in port_methods(port):
        assert inspect.iscoroutinefunction(getattr(port, name)), f"{port.__name__}.{name} must be async"


def test_ingest_port_declares_recv():
    assert port_methods(MatchIngestPort) == {"recv"}


@pytest.mark.asyncio
async def test_async_iterator_satisfies_ingest_port():
    """비동기 제너레이터로 구현한 수집 포트"""
    class ListIngest:
        def __init__(self, items):
            self.items = items

        async def recv(self):
            for item in self.items:
                yield item

    received = [raw async for raw in ListIngest([{"rule_id": 1}, {"rule_id": 2}]).recv()]

    assert received == [{"rule_id": 1}, {"rule_id": 2}]
