import json
import asyncio
import time
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.engine_config import EngineConfig
from core.llm_client import LLMClient, create_llm_client
from models import AgentReport, ManuscriptAudit
from services.correction_service import CorrectionService
from services.errors import (
    AuditNotFoundError,
    CorrectionError,
    CorrectionNotFoundError,
    InvalidTransitionError,
    ManuscriptNotFoundError,
    PendingCorrectionsError,
    ResolutionOptionError,
    SpanConflictError,
    StructuralResolutionError,
)
from storage import ManuscriptStore

BACKEND_ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    data_dir: str = "../data"
    db_name: str = "galley.db"

    llm_provider: str = "deepseek"
    remote_llm_enabled: bool = False
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    minimax_api_key: Optional[str] = None
    minimax_model: str = "MiniMax-M2.5"
    deepseek_api_key: Optional[str] = None
    deepseek_base_url: str = "https://api.deepseek.com"
    deepseek_model: str = "deepseek-chat"
    llm_max_tokens: int = 4000
    request_timeout: float = 120.0

    correction_temperature: float = 0.3
    correction_max_tokens: int = 2000
    rate_limit_delay: float = 0.5
    repetition_delay: float = 0.3
    context_chars: int = 500
    max_expansion_ratio: float = 2.5

    log_level: str = "INFO"
    enable_http_logging: bool = True
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=str(BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
    )


settings = Settings()
app = FastAPI(title="Galley API", version="0.3.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("galley.api")
if settings.log_file:
    log_path = Path(settings.log_file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    galley_logger = logging.getLogger("galley")
    if not any(
        isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(log_path)
        for handler in galley_logger.handlers
    ):
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
        file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        galley_logger.addHandler(file_handler)
        logger.info("file logging enabled path=%s", log_path)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

PROVIDER_FALLBACK_ORDER = {
    "deepseek": ["openai", "minimax"],
    "openai": ["deepseek", "minimax"],
    "minimax": ["deepseek", "openai"],
}


def _normalize_provider(provider: str) -> str:
    candidate = (provider or "deepseek").strip().lower()
    if candidate not in PROVIDER_FALLBACK_ORDER:
        logger.warning("invalid llm provider configured=%s fallback=deepseek", provider)
        return "deepseek"
    return candidate


def resolve_llm_runtime() -> Dict[str, Any]:
    requested_provider = _normalize_provider(settings.llm_provider)
    keys = {
        "openai": (settings.openai_api_key or "").strip(),
        "minimax": (settings.minimax_api_key or "").strip(),
        "deepseek": (settings.deepseek_api_key or "").strip(),
    }
    has_any_key = any(keys.values())

    remote_requested = settings.remote_llm_enabled
    auto_enabled = False
    remote_effective = remote_requested
    if os.getenv("REMOTE_LLM_ENABLED") is None and not remote_requested and has_any_key:
        # Keys present and REMOTE_LLM_ENABLED not set explicitly.
        remote_effective = True
        auto_enabled = True

    effective_provider = requested_provider
    provider_switch_reason = "configured"
    if not keys[requested_provider]:
        for candidate in PROVIDER_FALLBACK_ORDER[requested_provider]:
            if keys[candidate]:
                effective_provider = candidate
                provider_switch_reason = f"switched_to_{candidate}_missing_{requested_provider}_key"
                break

    if effective_provider == "minimax":
        effective_model = settings.minimax_model
        effective_base_url = "https://api.minimaxi.com/v1"
    elif effective_provider == "deepseek":
        effective_model = settings.deepseek_model
        effective_base_url = settings.deepseek_base_url
    else:
        effective_model = settings.openai_model
        effective_base_url = "https://api.openai.com/v1"

    provider_key = keys[effective_provider]
    return {
        "requested_provider": requested_provider,
        "effective_provider": effective_provider,
        "provider_switch_reason": provider_switch_reason,
        "effective_model": effective_model,
        "effective_base_url": effective_base_url,
        "provider_key": provider_key,
        "remote_requested": remote_requested,
        "remote_effective": remote_effective,
        "remote_ready": remote_effective and bool(provider_key),
        "remote_auto_enabled": auto_enabled,
        "has_openai_key": bool(keys["openai"]),
        "has_minimax_key": bool(keys["minimax"]),
        "has_deepseek_key": bool(keys["deepseek"]),
    }


def build_engine_config() -> EngineConfig:
    return EngineConfig(
        correction_temperature=settings.correction_temperature,
        correction_max_tokens=settings.correction_max_tokens,
        rate_limit_delay=settings.rate_limit_delay,
        repetition_delay=settings.repetition_delay,
        context_chars=settings.context_chars,
        max_expansion_ratio=settings.max_expansion_ratio,
    )


def build_llm_client(runtime: Dict[str, Any]) -> LLMClient:
    return create_llm_client(
        runtime["effective_provider"],
        # Empty key keeps the client offline.
        api_key=runtime["provider_key"] if runtime["remote_effective"] else "",
        base_url=runtime["effective_base_url"],
        model=runtime["effective_model"],
        chat_max_tokens=settings.llm_max_tokens,
        request_timeout=settings.request_timeout,
    )


llm_runtime = resolve_llm_runtime()
logger.info(
    "llm runtime requested_provider=%s effective_provider=%s model=%s remote_requested=%s remote_effective=%s remote_ready=%s auto_enabled=%s",
    llm_runtime["requested_provider"],
    llm_runtime["effective_provider"],
    llm_runtime["effective_model"],
    llm_runtime["remote_requested"],
    llm_runtime["remote_effective"],
    llm_runtime["remote_ready"],
    llm_runtime["remote_auto_enabled"],
)
if llm_runtime["provider_switch_reason"] != "configured":
    logger.warning(
        "llm provider switched reason=%s requested=%s effective=%s",
        llm_runtime["provider_switch_reason"],
        llm_runtime["requested_provider"],
        llm_runtime["effective_provider"],
    )
if llm_runtime["remote_effective"] and not llm_runtime["remote_ready"]:
    logger.warning("remote llm requested/effective but no matching api key; corrections will fail as anomalies")

correction_service: Optional[CorrectionService] = None


def get_correction_service() -> CorrectionService:
    global correction_service
    if correction_service is None:
        data_dir = (BACKEND_ROOT / settings.data_dir).resolve()
        store = ManuscriptStore(str(data_dir / settings.db_name))
        correction_service = CorrectionService(
            store,
            build_llm_client(llm_runtime),
            build_engine_config(),
        )
        logger.info("correction service ready db_path=%s", store.db_path)
    return correction_service


@app.middleware("http")
async def http_access_log_middleware(request: Request, call_next):
    if not settings.enable_http_logging:
        return await call_next(request)

    request_id = uuid4().hex[:8]
    started = time.perf_counter()
    logger.info(
        "REQ start id=%s method=%s path=%s query=%s",
        request_id,
        request.method,
        request.url.path,
        request.url.query or "-",
    )
    try:
        response = await call_next(request)
    except Exception:
        elapsed = (time.perf_counter() - started) * 1000
        logger.exception("REQ failed id=%s duration_ms=%.2f", request_id, elapsed)
        raise

    elapsed = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "REQ end id=%s status=%s duration_ms=%.2f",
        request_id,
        response.status_code,
        elapsed,
    )
    return response


def http_error(exc: CorrectionError) -> HTTPException:
    if isinstance(exc, (ManuscriptNotFoundError, AuditNotFoundError, CorrectionNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ResolutionOptionError):
        return HTTPException(status_code=400, detail={"message": str(exc), "valid_ids": exc.valid_ids})
    if isinstance(exc, PendingCorrectionsError):
        return HTTPException(status_code=409, detail={"message": str(exc), "pending_ids": exc.pending_ids})
    if isinstance(exc, (InvalidTransitionError, SpanConflictError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, StructuralResolutionError):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


class AuditCreateRequest(BaseModel):
    id: Optional[str] = None
    project_id: Optional[str] = None
    novel_content: str
    reports: List[AgentReport] = Field(default_factory=list)


class ResolveRequest(BaseModel):
    option_id: str


def manuscript_summary(manuscript) -> Dict[str, Any]:
    return {
        "id": manuscript.id,
        "audit_id": manuscript.audit_id,
        "project_id": manuscript.project_id,
        "status": manuscript.status.value,
        "total_issues": manuscript.total_issues,
        "corrected_issues": manuscript.corrected_issues,
        "approved_issues": manuscript.approved_issues,
        "rejected_issues": manuscript.rejected_issues,
        "content_version": manuscript.content_version,
        "created_at": manuscript.created_at.isoformat(),
        "updated_at": manuscript.updated_at.isoformat(),
    }


@app.get("/api/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.get("/api/runtime/llm")
async def llm_runtime_status():
    runtime = resolve_llm_runtime()
    service = get_correction_service()
    usage = getattr(service.llm_client, "usage", None)
    return {
        "requested_provider": runtime["requested_provider"],
        "effective_provider": runtime["effective_provider"],
        "effective_model": runtime["effective_model"],
        "effective_base_url": runtime["effective_base_url"],
        "provider_switch_reason": runtime["provider_switch_reason"],
        "remote_requested": runtime["remote_requested"],
        "remote_effective": runtime["remote_effective"],
        "remote_ready": runtime["remote_ready"],
        "remote_auto_enabled": runtime["remote_auto_enabled"],
        "has_openai_key": runtime["has_openai_key"],
        "has_minimax_key": runtime["has_minimax_key"],
        "has_deepseek_key": runtime["has_deepseek_key"],
        "correction_temperature": settings.correction_temperature,
        "rate_limit_delay": settings.rate_limit_delay,
        "usage": usage.model_dump(mode="json") if usage is not None else None,
    }


@app.post("/api/audits")
async def create_audit(req: AuditCreateRequest):
    if not req.novel_content.strip():
        raise HTTPException(status_code=400, detail="novel_content is required")
    audit = ManuscriptAudit(
        id=req.id or str(uuid4()),
        project_id=req.project_id,
        novel_content=req.novel_content,
        reports=req.reports,
    )
    get_correction_service().store.add_audit(audit)
    return {"id": audit.id, "issue_count": len(audit.all_issues())}


@app.get("/api/audits/{audit_id}")
async def get_audit(audit_id: str):
    try:
        audit = get_correction_service().store.get_audit(audit_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return audit.model_dump(mode="json")


@app.post("/api/audits/{audit_id}/corrections")
async def run_corrections(audit_id: str):
    service = get_correction_service()
    try:
        manuscript = await service.start_correction_run(audit_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return manuscript.model_dump(mode="json")


@app.post("/api/audits/{audit_id}/corrections/stream")
async def run_corrections_stream(audit_id: str):
    service = get_correction_service()
    try:
        service.store.get_audit(audit_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc

    manuscript_id = str(uuid4())
    queue: asyncio.Queue[tuple[str, Dict[str, Any]]] = asyncio.Queue()

    async def report(progress):
        await queue.put(("progress", progress.model_dump(mode="json")))

    async def worker():
        try:
            manuscript = await service.start_correction_run(
                audit_id,
                on_progress=report,
                manuscript_id=manuscript_id,
            )
            await queue.put(("done", manuscript_summary(manuscript)))
        except Exception as exc:
            logger.exception("correction stream failed audit_id=%s", audit_id)
            await queue.put(("error", {"detail": str(exc)}))
        finally:
            await queue.put(("__end__", {}))

    worker_task = asyncio.create_task(worker())

    async def event_stream():
        heartbeat = 0
        yield f"event: manuscript\ndata: {json.dumps({'id': manuscript_id})}\n\n"
        try:
            while True:
                try:
                    event, payload = await asyncio.wait_for(queue.get(), timeout=2.0)
                except asyncio.TimeoutError:
                    heartbeat += 1
                    heartbeat_payload = {
                        "seq": heartbeat,
                        "timestamp": datetime.now().isoformat(),
                    }
                    yield f"event: heartbeat\ndata: {json.dumps(heartbeat_payload, ensure_ascii=False)}\n\n"
                    continue

                if event == "__end__":
                    break
                yield f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"
        finally:
            if not worker_task.done():
                service.cancel_run(manuscript_id)
                worker_task.cancel()
                try:
                    await worker_task
                except asyncio.CancelledError:
                    pass

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/api/manuscripts")
async def list_manuscripts(audit_id: Optional[str] = None):
    manuscripts = get_correction_service().store.list_manuscripts(audit_id)
    return [manuscript_summary(m) for m in manuscripts]


@app.get("/api/manuscripts/{manuscript_id}")
async def get_manuscript(manuscript_id: str):
    try:
        manuscript = get_correction_service().get_manuscript(manuscript_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return manuscript.model_dump(mode="json")


@app.post("/api/manuscripts/{manuscript_id}/corrections/{correction_id}/approve")
async def approve_correction(manuscript_id: str, correction_id: str):
    try:
        record = await get_correction_service().approve(manuscript_id, correction_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return record.model_dump(mode="json")


@app.post("/api/manuscripts/{manuscript_id}/corrections/{correction_id}/reject")
async def reject_correction(manuscript_id: str, correction_id: str):
    try:
        record = await get_correction_service().reject(manuscript_id, correction_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return record.model_dump(mode="json")


@app.get("/api/manuscripts/{manuscript_id}/corrections/{correction_id}/structural-options")
async def structural_options(manuscript_id: str, correction_id: str):
    try:
        issue = get_correction_service().get_structural_options(manuscript_id, correction_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return issue.model_dump(mode="json")


@app.post("/api/manuscripts/{manuscript_id}/corrections/{correction_id}/resolve")
async def resolve_structural(manuscript_id: str, correction_id: str, req: ResolveRequest):
    try:
        manuscript = await get_correction_service().apply_structural_resolution(
            manuscript_id,
            correction_id,
            req.option_id,
        )
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return manuscript.model_dump(mode="json")


@app.post("/api/manuscripts/{manuscript_id}/approve-all")
async def approve_all(manuscript_id: str):
    try:
        return await get_correction_service().auto_approve_all(manuscript_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc


@app.post("/api/manuscripts/{manuscript_id}/resolve-structural")
async def resolve_all_structural(manuscript_id: str):
    try:
        return await get_correction_service().auto_resolve_structural(manuscript_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc


@app.post("/api/manuscripts/{manuscript_id}/finalize")
async def finalize_manuscript(manuscript_id: str):
    try:
        manuscript = await get_correction_service().finalize(manuscript_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return manuscript_summary(manuscript)


@app.post("/api/manuscripts/{manuscript_id}/cancel")
async def cancel_manuscript_run(manuscript_id: str):
    service = get_correction_service()
    try:
        service.get_manuscript(manuscript_id)
    except CorrectionError as exc:
        raise http_error(exc) from exc
    return {"id": manuscript_id, "cancelled": service.cancel_run(manuscript_id)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
