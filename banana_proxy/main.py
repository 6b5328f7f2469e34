from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from banana_proxy.config import (
    get_cors_allow_origins,
    get_daily_generation_limit,
    get_generation_strategy,
    get_generation_timeout_ms,
    get_host,
    get_http_timeout_ms,
    get_log_level,
    get_poll_interval_ms,
    get_port,
    get_quota_retention_days,
    get_reference_image_path,
    get_replicate_api_token,
    get_replicate_model,
    get_trust_forwarded_for,
)
from banana_proxy.generation import (
    GenerationClient,
    GenerationConfigError,
    GenerationError,
    GenerationRequest,
    GenerationTimeoutError,
    UpstreamError,
    get_generation_client,
)
from banana_proxy.quota import QuotaStore
from banana_proxy.reference_image import ReferenceImageMissingError, load_reference_image_async

logging.basicConfig(level=get_log_level())
logger = logging.getLogger("banana-proxy")

PROMPT_REQUIRED = "Prompt is required"
DAILY_LIMIT_REACHED = "Daily limit reached. Please come back tomorrow!"
REFERENCE_IMAGE_MISSING = "Reference image missing on server"
SERVICE_NOT_CONFIGURED = "Generation service is not configured"
GENERATION_FAILED = "Failed to generate image"
GENERATION_TIMED_OUT = "Image generation timed out"


class GenerateRequest(BaseModel):
    prompt: str | None = None


class GenerateResponse(BaseModel):
    result: str


class QuotaStatusResponse(BaseModel):
    day: str
    used: int
    limit: int
    remaining: int


def error_detail(error: str, details: Any = None) -> dict[str, Any]:
    detail: dict[str, Any] = {"error": error}
    if details is not None:
        detail["details"] = details
    return detail


def get_client_key(request: Request) -> str:
    # X-Forwarded-For is caller-controlled unless a trusted proxy rewrites it.
    if get_trust_forwarded_for():
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_quota_store(request: Request) -> QuotaStore:
    return request.app.state.quota_store


def get_client_factory() -> Callable[[], GenerationClient]:
    return get_generation_client


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.quota_store = QuotaStore(
        daily_limit=get_daily_generation_limit(),
        retention_days=get_quota_retention_days(),
    )
    logger.info(
        "Serving %s via %s strategy, %s generations per client per UTC day",
        get_replicate_model(),
        get_generation_strategy(),
        app.state.quota_store.daily_limit,
    )
    if not get_replicate_api_token():
        logger.warning("REPLICATE_API_TOKEN is not set; generation requests will fail")
    yield


app = FastAPI(title="Nano Banana Proxy", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_allow_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    content = exc.detail if isinstance(exc.detail, dict) else {"error": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # The only request body field is the prompt, so any body error means it is unusable.
    logger.debug("Rejected request body: %s", exc.errors())
    return JSONResponse(status_code=400, content={"error": PROMPT_REQUIRED})


@app.get("/healthz")
async def healthz(request: Request) -> dict:
    reference_path = get_reference_image_path()
    quota_store: QuotaStore | None = getattr(request.app.state, "quota_store", None)
    return {
        "ok": bool(get_replicate_api_token()),
        "generation_strategy": get_generation_strategy(),
        "model": get_replicate_model(),
        "daily_generation_limit": quota_store.daily_limit if quota_store else get_daily_generation_limit(),
        "tracked_clients": len(quota_store) if quota_store else 0,
        "reference_image_path": str(reference_path),
        "reference_image_present": reference_path.is_file(),
        "poll_interval_ms": get_poll_interval_ms(),
        "http_timeout_ms": get_http_timeout_ms(),
        "generation_timeout_ms": get_generation_timeout_ms(),
    }


@app.get("/api/quota", response_model=QuotaStatusResponse)
async def quota_status(
    request: Request,
    quota_store: QuotaStore = Depends(get_quota_store),
) -> QuotaStatusResponse:
    usage = quota_store.usage(get_client_key(request))
    return QuotaStatusResponse(day=usage.day, used=usage.used, limit=usage.limit, remaining=usage.remaining)


@app.post("/api/generate", response_model=GenerateResponse)
async def generate(
    payload: GenerateRequest,
    request: Request,
    quota_store: QuotaStore = Depends(get_quota_store),
    client_factory: Callable[[], GenerationClient] = Depends(get_client_factory),
) -> GenerateResponse:
    prompt = payload.prompt
    if not prompt:
        raise HTTPException(status_code=400, detail=error_detail(PROMPT_REQUIRED))

    client_key = get_client_key(request)
    if not quota_store.check_and_consume(client_key):
        logger.warning("Daily limit reached for %s", client_key)
        raise HTTPException(status_code=429, detail=error_detail(DAILY_LIMIT_REACHED))

    logger.info("Received generation request from %s (prompt length %s)", client_key, len(prompt))

    reference_path = get_reference_image_path()
    try:
        reference_image = await load_reference_image_async(reference_path)
    except ReferenceImageMissingError as exc:
        logger.error("Reference image not found at: %s", exc.path)
        raise HTTPException(status_code=500, detail=error_detail(REFERENCE_IMAGE_MISSING)) from exc

    try:
        client = client_factory()
    except GenerationConfigError as exc:
        logger.error("Generation client unavailable: %s", exc)
        raise HTTPException(status_code=500, detail=error_detail(SERVICE_NOT_CONFIGURED, str(exc))) from exc

    try:
        result = await client.generate(GenerationRequest(prompt=prompt, reference_image=reference_image))
    except UpstreamError as exc:
        status_code = exc.status_code if exc.status_code >= 400 else 502
        raise HTTPException(status_code=status_code, detail=error_detail(GENERATION_FAILED, exc.detail)) from exc
    except GenerationTimeoutError as exc:
        logger.error("Generation timed out: %s", exc)
        raise HTTPException(status_code=504, detail=error_detail(GENERATION_TIMED_OUT, str(exc))) from exc
    except GenerationError as exc:
        logger.error("Generation failed: %s (%s)", exc, exc.detail)
        details = exc.detail if exc.detail is not None else str(exc)
        raise HTTPException(status_code=500, detail=error_detail(GENERATION_FAILED, details)) from exc
    except Exception as exc:
        logger.exception("Generation request failed unexpectedly")
        raise HTTPException(status_code=500, detail=error_detail(GENERATION_FAILED, str(exc))) from exc

    return GenerateResponse(result=result.result_url)


def main() -> None:
    uvicorn.run(
        "banana_proxy.main:app",
        host=get_host(),
        port=get_port(),
        log_level=get_log_level().lower(),
    )


if __name__ == "__main__":
    main()
