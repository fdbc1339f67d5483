"""
HTTP endpoints for the GeoLink rule engine.

This module implements health, readiness, metrics, and info endpoints
for monitoring, plus the operator surface of the rule engine
(pending list, quorum check, execution, batch, selection, reject).
"""

import time
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from geolink.core.errors import AuthorizationError, EngineError, SubmissionError, ValidationError
from geolink.core.models import BatchReport, Credentials, MatchEvent
from geolink.observability import metrics as engine_metrics
from geolink.observability.logging_setup import get_logger
from geolink.orchestrators.engine import RuleEngine, parse_key
from geolink.settings import Settings

log = get_logger("geolink.http")

# 오류 타입별 HTTP 상태 코드
ERROR_STATUS = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (SubmissionError, 502),
)


def _event_dict(event: MatchEvent) -> Dict[str, Any]:
    data = event.model_dump(mode="json")
    data["key"] = event.key.as_string()
    return data


def _report_dict(report: BatchReport) -> Dict[str, Any]:
    return {
        "success_count": report.success_count,
        "fail_count": report.fail_count,
        "summary": report.summary,
        "per_item_errors": [vars(e) for e in report.per_item_errors],
        "outcomes": {k: o.model_dump(mode="json") for k, o in report.outcomes.items()},
    }


def _credentials(payload: Dict[str, Any], settings: Settings) -> Credentials:
    identity = payload.get("identity") or settings.engine.operator_public_key
    if not identity:
        raise ValidationError("identity is required", reason="malformed_identity")
    return Credentials(identity=identity, secret_key=payload.get("secret_key") or None)


def create_app(settings: Settings, engine: Optional[RuleEngine] = None) -> FastAPI:
    """FastAPI 애플리케이션을 생성합니다."""
    app = FastAPI(
        title=settings.observability.service_name,
        version=settings.observability.build_version,
        description="GeoLink Rule Execution Service"
    )

    start_time = time.time()

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
        log.warning(f"요청 실패 path:{request.url.path} error:{exc.message}", reason=exc.reason)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(KeyError)
    async def key_error_handler(request: Request, exc: KeyError):
        return JSONResponse(status_code=404, content={"category": "not_found", "reason": "unknown_key",
                                                      "error": f"not found: {exc.args[0] if exc.args else ''}"})

    def _engine() -> RuleEngine:
        if engine is None:
            raise HTTPException(status_code=503, detail="Engine not running")
        return engine

    @app.get("/health")
    async def health():
        """헬스 체크 엔드포인트"""
        return JSONResponse({
            "status": "ok",
            "service": settings.observability.service_name,
            "timestamp": time.time()
        })

    @app.get("/ready")
    async def ready():
        """레디니스 체크 엔드포인트"""
        if engine is None:
            return JSONResponse(status_code=503, content={
                "status": "not_ready",
                "service": settings.observability.service_name,
                "timestamp": time.time()
            })
        return JSONResponse({
            "status": "ready",
            "service": settings.observability.service_name,
            "batch_in_flight": engine.batch_in_flight,
            "timestamp": time.time()
        })

    @app.get("/metrics")
    async def metrics():
        """Prometheus 메트릭 엔드포인트"""
        if not settings.observability.metrics_enabled:
            raise HTTPException(status_code=503, detail="Metrics disabled")

        engine_metrics.uptime_seconds.set(time.time() - start_time)
        try:
            return Response(
                generate_latest(),
                media_type=CONTENT_TYPE_LATEST
            )
        except Exception as e:
            log.error(f"메트릭 생성 오류: {e}")
            raise HTTPException(status_code=500, detail="Metrics generation failed")

    @app.get("/info")
    async def info():
        """서비스 정보 엔드포인트"""
        uptime = time.time() - start_time
        return JSONResponse({
            "service": settings.observability.service_name,
            "version": settings.observability.build_version,
            "build_date": settings.observability.build_date,
            "uptime_seconds": int(uptime),
            "metrics_enabled": settings.observability.metrics_enabled,
            "log_level": settings.observability.log_level,
            "lifecycle_backend": settings.engine.lifecycle_backend
        })

    # ---- 규칙 엔진 ----

    @app.get("/rules/pending")
    async def pending():
        """대기 중인 매치 이벤트 목록"""
        eng = _engine()
        events = await eng.list_pending()
        return {
            "pending": [_event_dict(e) for e in events],
            "selected": [k.as_string() for k in eng.selection.keys()],
        }

    @app.get("/rules/completed")
    async def completed():
        """완료된 실행 목록"""
        records = await _engine().list_completed()
        return {"completed": [r.model_dump(mode="json") for r in records]}

    @app.get("/rules/rejected")
    async def rejected():
        """거부된 매치 이벤트 목록"""
        events = await _engine().list_rejected()
        return {"rejected": [_event_dict(e) for e in events]}

    @app.get("/rules/{rule_id}/quorum")
    async def quorum(rule_id: int):
        """규칙의 쿼럼 상태"""
        status = await _engine().check_quorum(rule_id)
        data = status.model_dump(mode="json")
        data["in_range"] = sorted(status.in_range)
        data["out_of_range"] = sorted(status.out_of_range)
        data["count_in_range"] = status.count_in_range
        return data

    @app.post("/rules/pending/execute")
    async def execute(payload: dict = Body(default={})):
        """대기 중인 매치 이벤트 하나를 실행합니다."""
        eng = _engine()
        key = parse_key(payload)
        outcome = await eng.execute(key, _credentials(payload, settings))
        log.info("execution requested over http", key=key.as_string(), success=outcome.success)
        return {"key": key.as_string(), **outcome.model_dump(mode="json")}

    @app.post("/rules/pending/execute-batch")
    async def execute_batch(payload: dict = Body(default={})):
        """선택된 (또는 지정된) 매치 이벤트를 배치로 실행합니다."""
        eng = _engine()
        keys = None
        if payload.get("keys") is not None:
            keys = [parse_key(k) for k in payload["keys"]]
        report = await eng.execute_batch(_credentials(payload, settings), keys)
        return _report_dict(report)

    @app.post("/rules/pending/batch/cancel")
    async def cancel_batch():
        """진행 중인 배치를 취소합니다."""
        return {"cancelled": _engine().cancel_batch()}

    @app.post("/rules/pending/selection")
    async def selection(payload: dict = Body(default={})):
        """선택 집합을 변경합니다 (select, deselect, toggle, select_all, clear)."""
        eng = _engine()
        action = payload.get("action", "select")
        keys = [parse_key(k) for k in payload.get("keys") or []]

        if action == "select":
            eng.selection.select_all(keys)
        elif action == "deselect":
            for key in keys:
                eng.selection.deselect(key)
        elif action == "toggle":
            for key in keys:
                eng.selection.toggle(key)
        elif action == "select_all":
            if not eng.batch_in_flight:
                await eng.refresh_pending()
            eng.selection.select_all(eng.pending.keys())
        elif action == "clear":
            eng.selection.clear()
        else:
            raise ValidationError(f"unknown selection action: {action}", reason="bad_action")

        selected: List[str] = [k.as_string() for k in eng.selection.keys()]
        return {"selected": selected, "count": len(selected)}

    @app.post("/rules/pending/{rule_id}/reject")
    async def reject(rule_id: int, payload: dict = Body(default={})):
        """매치 이벤트를 거부합니다."""
        key = parse_key({**payload, "rule_id": rule_id})
        rejected_ = await _engine().reject(key)
        return {"key": key.as_string(), "rejected": rejected_}

    @app.get("/")
    async def root():
        """루트 엔드포인트"""
        return JSONResponse({
            "service": settings.observability.service_name,
            "version": settings.observability.build_version,
            "endpoints": {
                "health": "/health",
                "ready": "/ready",
                "metrics": "/metrics",
                "info": "/info",
                "pending": "/rules/pending",
                "completed": "/rules/completed",
                "rejected": "/rules/rejected",
                "quorum": "/rules/{rule_id}/quorum",
                "execute": "/rules/pending/execute",
                "execute_batch": "/rules/pending/execute-batch",
                "cancel_batch": "/rules/pending/batch/cancel",
                "selection": "/rules/pending/selection",
                "reject": "/rules/pending/{rule_id}/reject"
            }
        })

    return app
