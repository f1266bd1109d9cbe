"""Scan4Care analyze service.

Accepts a problem photo, a confirmatory selfie, a consent flag and free-text
context, and answers with a five-part advisory text from Gemini.

Pipeline per request:
- validate both uploads and the consent literal (no disk writes before this),
- stream both uploads to the ephemeral store,
- send the Telegram audit message and photos (best effort),
- run inference on the problem image only,
- release both stored files on every exit path.

Run (from repo root):
  uvicorn main:app --host 0.0.0.0 --port 5000

`main.py` loads `.env` and builds the app from one config; this module only
exposes the `create_app()` factory.

Quick curl:
  curl -X POST http://127.0.0.1:5000/analyze \
    -F "image=@leaf.jpg" -F "selfie=@me.jpg" -F "consent=true" \
    -F "prompt=What is wrong with this leaf?"
"""

from __future__ import annotations

import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Dict, Optional, Protocol
from uuid import uuid4

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from scan4care.shared.analyze_contract import (
    DEFAULT_DEVICE,
    DEFAULT_LOCATION,
    DEFAULT_PROMPT,
    PROBLEM_FIELD,
    SELFIE_FIELD,
    AnalysisRequest,
    AnalysisResult,
    AnalyzeError,
    ConfigurationError,
    InferenceError,
    UploadedImage,
    error_body,
    success_body,
)
from scan4care.shared.config import ServiceConfig, load_config
from scan4care.shared.ephemeral_store import EphemeralFileStore
from scan4care.shared.inference_client import GeminiClient
from scan4care.shared.notifier import TelegramNotifier, request_events


SERVICE_VERSION = "1.0"
HEALTH_TEXT = "Scan4Care backend running 🚀"
CONSENT_LITERAL = "true"

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify_text(self, message: str) -> None: ...

    async def notify_photo(self, image: UploadedImage, caption: str) -> None: ...


class InferenceClient(Protocol):
    async def analyze(self, image: UploadedImage, user_prompt: Optional[str]) -> AnalysisResult: ...


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(message))


def _is_missing(upload: Optional[UploadFile]) -> bool:
    return upload is None or not upload.filename


def _text_or_default(value: Optional[str], default: str) -> str:
    if value is None:
        return default
    value = value.strip()
    return value or default


class AnalyzePipeline:
    """Request orchestrator. Holds no per-request state between calls."""

    def __init__(
        self,
        config: ServiceConfig,
        store: EphemeralFileStore,
        notifier: Notifier,
        inference: InferenceClient,
    ) -> None:
        self.config = config
        self.store = store
        self.notifier = notifier
        self.inference = inference

    async def run(
        self,
        *,
        image: Optional[UploadFile],
        selfie: Optional[UploadFile],
        consent: Optional[str],
        location: Optional[str] = None,
        prompt: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> JSONResponse:
        request_id = uuid4().hex[:12]
        t0 = time.perf_counter()

        if _is_missing(image) or _is_missing(selfie):
            logger.info("[%s] rejected: missing image field", request_id)
            return _error("Both images are required", 400)
        if consent != CONSENT_LITERAL:
            logger.info("[%s] rejected: consent not given", request_id)
            return _error("Consent required", 403)

        assert image is not None and selfie is not None

        try:
            async with AsyncExitStack() as cleanup:
                # Type check both before either touches disk.
                self.store.check_type(image)
                self.store.check_type(selfie)

                problem_image = await self.store.store(PROBLEM_FIELD, image)
                cleanup.callback(self.store.release, problem_image)
                selfie_image = await self.store.store(SELFIE_FIELD, selfie)
                cleanup.callback(self.store.release, selfie_image)

                request = AnalysisRequest(
                    problem_image=problem_image,
                    selfie_image=selfie_image,
                    consent=True,
                    location_hint=_text_or_default(location, DEFAULT_LOCATION),
                    device_hint=_text_or_default(user_agent, DEFAULT_DEVICE),
                    user_prompt=_text_or_default(prompt, DEFAULT_PROMPT),
                )

                await self._notify(request_id, request)

                result = await self.inference.analyze(problem_image, request.user_prompt)
                response = self._respond(request_id, result)
        except AnalyzeError as exc:
            level = logging.INFO if exc.status_code < 500 else logging.ERROR
            logger.log(level, "[%s] %s: %s", request_id, exc.kind, exc.message)
            return _error(exc.message, exc.status_code)
        except Exception:  # noqa: BLE001 - last-resort 500
            logger.exception("[%s] unexpected error", request_id)
            return _error("Server error", 500)

        latency_ms = int(round((time.perf_counter() - t0) * 1000.0))
        logger.info("[%s] answered %d in %d ms", request_id, response.status_code, latency_ms)
        return response

    async def _notify(self, request_id: str, request: AnalysisRequest) -> None:
        for event in request_events(request):
            try:
                if event.kind == "photo" and event.image is not None:
                    await self.notifier.notify_photo(event.image, event.text)
                else:
                    await self.notifier.notify_text(event.text)
            except Exception as exc:  # noqa: BLE001 - notifications never fail a request
                logger.warning("[%s] notification dropped: %s", request_id, exc)

    def _respond(self, request_id: str, result: AnalysisResult) -> JSONResponse:
        if result["ok"]:
            return JSONResponse(status_code=200, content=success_body(result["text"]))

        if result["kind"] == "configuration_error":
            raise ConfigurationError("AI service is not configured")

        if self.config.inference_failure_policy == "degrade":
            logger.warning("[%s] inference failed, answering degraded: %s", request_id, result["message"])
            return JSONResponse(status_code=200, content=success_body(self.config.degraded_response))

        raise InferenceError("AI analysis failed")


def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    store: Optional[EphemeralFileStore] = None,
    notifier: Optional[Notifier] = None,
    inference: Optional[InferenceClient] = None,
) -> FastAPI:
    config = config or load_config()
    store = store or EphemeralFileStore(
        config.upload_dir,
        config.max_upload_bytes,
        verify_images=config.verify_images,
    )
    pipeline = AnalyzePipeline(
        config,
        store,
        notifier or TelegramNotifier.from_config(config),
        inference or GeminiClient.from_config(config),
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        store.sweep_stale(config.sweep_max_age_s)
        logger.info(
            "analyze service ready (env=%s, notifications=%s, inference_policy=%s)",
            config.app_env,
            "on" if config.notifications_active else "off",
            config.inference_failure_policy,
        )
        yield

    app = FastAPI(title="Scan4Care Analyze Service", version=SERVICE_VERSION, lifespan=lifespan)
    app.state.pipeline = pipeline
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    # Errors come back as JSON, not HTML.
    @app.exception_handler(404)
    async def not_found_handler(request: Request, __):
        return JSONResponse(
            status_code=404,
            content={"detail": "Not Found", "path": request.url.path},
        )

    # /analyze always answers with the {success, error} envelope.
    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        fields = {str(err["loc"][-1]) for err in exc.errors() if err.get("loc")}
        if fields & {PROBLEM_FIELD, SELFIE_FIELD}:
            # A text value where a file is expected counts as a missing file.
            return _error("Both images are required", 400)
        return _error("Invalid request", 422)

    @app.exception_handler(StarletteHTTPException)
    async def analyze_http_error_handler(request: Request, exc: StarletteHTTPException):
        if request.url.path == "/analyze":
            return _error(str(exc.detail), exc.status_code)
        return await http_exception_handler(request, exc)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Advisory text and uploads must not be cached by proxies.
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
        return response

    @app.get("/", response_class=PlainTextResponse)
    def root() -> str:
        return HEALTH_TEXT

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/analyze")
    async def analyze(
        request: Request,
        image: Optional[UploadFile] = File(default=None),
        selfie: Optional[UploadFile] = File(default=None),
        consent: Optional[str] = Form(default=None),
        location: Optional[str] = Form(default=None),
        prompt: Optional[str] = Form(default=None),
    ) -> JSONResponse:
        return await pipeline.run(
            image=image,
            selfie=selfie,
            consent=consent,
            location=location,
            prompt=prompt,
            user_agent=request.headers.get("user-agent"),
        )

    return app
