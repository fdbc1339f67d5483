# geolink/settings.py
from __future__ import annotations
from pydantic import BaseModel, Field

class GeoLinkAPI(BaseModel):
    base_url: str = "http://localhost:4000/api"
    token: str = ""
    timeout_sec: int = 30
    max_retries: int = 3

class EngineConfig(BaseModel):
    operator_public_key: str | None = None
    poll_interval_sec: float = 10.0           # 대기 목록 새로고침 주기
    batch_pause_sec: float = 1.0              # 배치 제출 사이 대기
    proof_timeout_sec: float = 120.0          # 패스키 승인 대기 한도
    register_settle_sec: float = 3.0          # 자동 등록 후 재조회 대기
    balance_sweep_interval_sec: float = 300.0
    lifecycle_backend: str = "sqlite"         # sqlite | api

class Reliability(BaseModel):
    lifecycle_path: str = "/data/lifecycle.db"
    outbox_path: str = "/data/outbox.db"
    history_path: str = "/data/history.db"
    history_retention_sec: int = 7 * 86400
    reconcile_max_attempts: int = 10
    backoff_initial_sec: float = 0.5
    backoff_max_sec: float = 10.0

class Observability(BaseModel):
    http_port: int = 8099
    metrics_enabled: bool = True
    service_name: str = "GeoLink Rule Engine"
    build_version: str = "0.1.0"
    build_date: str = "2025-01-01"
    log_level: str = "INFO"
    json_logs: bool = False

class Settings(BaseModel):
    # 하위 섹션 (기본값/팩토리로 누락 방지)
    api: GeoLinkAPI = Field(default_factory=GeoLinkAPI)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    reliability: Reliability = Field(default_factory=Reliability)
    observability: Observability = Field(default_factory=Observability)

    def __init__(self, **data):
        super().__init__(**data)
        # 하위 객체들이 제대로 초기화되었는지 확인
        if not isinstance(self.api, GeoLinkAPI):
            self.api = GeoLinkAPI()
        if not isinstance(self.engine, EngineConfig):
            self.engine = EngineConfig()
        if not isinstance(self.reliability, Reliability):
            self.reliability = Reliability()
        if not isinstance(self.observability, Observability):
            self.observability = Observability()
