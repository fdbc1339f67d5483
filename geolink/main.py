# geolink/main.py
import os, asyncio, signal
from typing import Optional
import uvicorn
from geolink.settings import Settings
from geolink.observability.health import create_app
from geolink.observability.logging_setup import setup_logging, get_logger
from geolink.adapters.geolink_api import GeoLinkClient
from geolink.adapters.storage import SQLiteExecutionHistory, SQLiteLifecycleStore, SQLiteOutbox
from geolink.orchestrators import AuthResolver, BatchOrchestrator, ReceiptReconciler, RuleEngine, RuleExecutor

def _b(name, default=False): return os.getenv(name, str(default)).lower() in ("1","true","yes","on")

def build_settings() -> Settings:
    s = Settings()

    # GeoLink API
    s.api.base_url = os.getenv("GEOLINK_BASE_URL", s.api.base_url)
    s.api.token = os.getenv("GEOLINK_TOKEN", s.api.token)
    s.api.timeout_sec = int(os.getenv("GEOLINK_TIMEOUT_SEC", s.api.timeout_sec))

    # 엔진
    s.engine.operator_public_key = os.getenv("OPERATOR_PUBLIC_KEY", s.engine.operator_public_key)
    s.engine.poll_interval_sec = float(os.getenv("POLL_INTERVAL_SEC", s.engine.poll_interval_sec))
    s.engine.batch_pause_sec = float(os.getenv("BATCH_PAUSE_SEC", s.engine.batch_pause_sec))
    s.engine.proof_timeout_sec = float(os.getenv("PROOF_TIMEOUT_SEC", s.engine.proof_timeout_sec))
    s.engine.balance_sweep_interval_sec = float(os.getenv("BALANCE_SWEEP_INTERVAL_SEC", s.engine.balance_sweep_interval_sec))
    s.engine.lifecycle_backend = os.getenv("LIFECYCLE_BACKEND", s.engine.lifecycle_backend).lower()

    # 신뢰성
    s.reliability.lifecycle_path = os.getenv("LIFECYCLE_DB_PATH", s.reliability.lifecycle_path)
    s.reliability.outbox_path = os.getenv("OUTBOX_DB_PATH", s.reliability.outbox_path)
    s.reliability.history_path = os.getenv("HISTORY_DB_PATH", s.reliability.history_path)
    s.reliability.reconcile_max_attempts = int(os.getenv("RECONCILE_MAX_ATTEMPTS", s.reliability.reconcile_max_attempts))

    # 관측성
    s.observability.metrics_enabled = _b("METRICS_ENABLED", s.observability.metrics_enabled)
    s.observability.http_port = int(os.getenv("METRICS_PORT", s.observability.http_port))
    s.observability.log_level = os.getenv("LOG_LEVEL", s.observability.log_level)
    s.observability.json_logs = _b("JSON_LOGS", s.observability.json_logs)

    return s

async def start_http(settings: Settings, engine: Optional[RuleEngine] = None) -> Optional[asyncio.Task]:
    if not settings.observability.metrics_enabled: return None
    app = create_app(settings, engine)
    return asyncio.create_task(uvicorn.Server(
        uvicorn.Config(app, host="0.0.0.0", port=settings.observability.http_port, log_level="info")
    ).serve())

async def maintenance_loop(engine: RuleEngine, history: SQLiteExecutionHistory, interval: float):
    log = get_logger("geolink.main")
    while True:
        try:
            deactivated = await engine.sweep_balances()
            if deactivated:
                log.info(f"잔액 부족으로 규칙 비활성화: {deactivated}")
        except Exception as e:
            log.warning(f"잔액 점검 실패: {e}")
        try:
            await history.gc()
        except Exception as e:
            log.warning(f"실행 기록 정리 실패: {e}")
        await asyncio.sleep(interval)

async def main():
    s = build_settings()
    setup_logging(s.observability.log_level, s.observability.json_logs)
    log = get_logger("geolink.main")
    log.info("설정 로드 완료", lifecycle_backend=s.engine.lifecycle_backend)

    client = GeoLinkClient(
        base_url=s.api.base_url,
        token=s.api.token,
        timeout=s.api.timeout_sec,
        max_retries=s.api.max_retries,
        backoff_initial=s.reliability.backoff_initial_sec,
        backoff_max=s.reliability.backoff_max_sec,
        poll_interval=s.engine.poll_interval_sec,
    )

    outbox = SQLiteOutbox(s.reliability.outbox_path); await outbox.init()
    history = SQLiteExecutionHistory(s.reliability.history_path, s.reliability.history_retention_sec); await history.init()

    if s.engine.lifecycle_backend == "api":
        lifecycle = client
    else:
        lifecycle = SQLiteLifecycleStore(s.reliability.lifecycle_path); await lifecycle.init()
    log.info("저장소 초기화 완료")

    async with client:
        resolver = AuthResolver(client, settle_seconds=s.engine.register_settle_sec,
                                proof_timeout=s.engine.proof_timeout_sec)
        executor = RuleExecutor(client, lifecycle, outbox, resolver, history)
        batch = BatchOrchestrator(executor, resolver, pause_seconds=s.engine.batch_pause_sec)
        reconciler = ReceiptReconciler(outbox, lifecycle, max_attempts=s.reliability.reconcile_max_attempts)
        engine = RuleEngine(client, lifecycle, executor, batch, reconciler,
                            history=history, balance=client,
                            poll_interval=s.engine.poll_interval_sec,
                            operator_identity=s.engine.operator_public_key)
        log.info("규칙 엔진 생성 완료")

        http_task = await start_http(s, engine)
        if http_task:
            log.info("HTTP 서버 시작됨")

        stop = asyncio.Future()
        try:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                try: loop.add_signal_handler(sig, lambda: (not stop.done()) and stop.set_result(True))
                except NotImplementedError: pass
        except RuntimeError: pass

        tasks = [
            asyncio.create_task(engine.poll_forever()),
            asyncio.create_task(maintenance_loop(engine, history, s.engine.balance_sweep_interval_sec)),
        ]
        # 로컬 수명 주기 저장소일 때만 매치를 직접 수집/게이트 처리
        if s.engine.lifecycle_backend != "api":
            tasks.append(asyncio.create_task(engine.run_ingest(client)))

        log.info("규칙 엔진 시작")
        await stop
        for t in tasks: t.cancel()
        if http_task: http_task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("규칙 엔진 종료")

def run():
    asyncio.run(main())

if __name__ == "__main__":
    run()
