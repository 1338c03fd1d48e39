import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from deal_recorder.api.routes import router as api_router
from deal_recorder.core.config import Settings, settings as default_settings
from deal_recorder.core.errors import InvalidRequest, PipelineError
from deal_recorder.core.logger import setup_logging
from deal_recorder.services.extractor import DealExtractor
from deal_recorder.services.finalizer import FinalizeOrchestrator
from deal_recorder.services.session_store import SessionStore
from deal_recorder.services.transcriber import Transcriber

logger = logging.getLogger(__name__)

IMMUTABLE_CACHE = "public, max-age=31536000, immutable"


def _error_response(exc: PipelineError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.to_dict()})


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(title="Deal Recorder API", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Services live for the process lifetime
    store = SessionStore(settings)
    app.state.settings = settings
    app.state.store = store
    app.state.finalizer = FinalizeOrchestrator(settings, store)
    app.state.transcriber = Transcriber(settings)
    app.state.extractor = DealExtractor(settings)

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error_response(InvalidRequest(str(exc.errors())))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(PipelineError(str(exc) or exc.__class__.__name__))

    # Output files never change once written
    @app.middleware("http")
    async def cache_output_files(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/files/") and response.status_code == 200:
            response.headers["Cache-Control"] = IMMUTABLE_CACHE
        return response

    @app.get("/health")
    def health():
        return {"ok": True}

    app.include_router(api_router)
    app.mount("/files", StaticFiles(directory=str(settings.final_dir)), name="files")

    return app


app = create_app()
