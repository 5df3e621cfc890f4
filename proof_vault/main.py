import asyncio
import logging
import structlog
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from proof_vault import __version__
from proof_vault.config import Settings, load_settings
from proof_vault.core.database import build_index
from proof_vault.core.errors import PayloadTooLargeError, ProofVaultError
from proof_vault.core.storage import build_content_store
from proof_vault.models.responses import ErrorResponse, GenerateResponse, HealthResponse, VerifyResponse
from proof_vault.services.engine import ProofEngine
from proof_vault.services.vision import build_provider_registry

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    if settings.LOG_FORMAT.lower() == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_engine(settings: Settings) -> ProofEngine:
    """Wire the engine's collaborators from configuration."""
    index = build_index(settings)
    index.initialize()
    return ProofEngine(
        index=index,
        providers=build_provider_registry(settings),
        store=build_content_store(settings),
        default_provider=settings.DEFAULT_PROVIDER,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    settings: Settings = app.state.settings
    owns_engine = app.state.engine is None

    logger.info("Starting AI Proof Vault API",
                index_backend=settings.INDEX_BACKEND, store_backend=settings.STORE_BACKEND)
    if owns_engine:
        try:
            app.state.engine = await asyncio.to_thread(build_engine, settings)
        except Exception as e:
            logger.error("Failed to initialize application", error=str(e))
            raise

    yield

    logger.info("Shutting down AI Proof Vault API")
    if owns_engine:
        app.state.engine.index.close()


router = APIRouter(prefix="/api", tags=["proofs"])


def get_engine(request: Request) -> ProofEngine:
    return request.app.state.engine


async def read_image(request: Request, image: Optional[UploadFile]) -> Optional[bytes]:
    """Read the uploaded image, enforcing the configured size limit."""
    if image is None:
        return None

    max_size = request.app.state.settings.MAX_FILE_SIZE
    data = await image.read(max_size + 1)
    if len(data) > max_size:
        raise PayloadTooLargeError(max_size)
    return data


@router.post("/generate", response_model=GenerateResponse)
async def generate_proof(
    request: Request,
    image: Optional[UploadFile] = File(None, description="Image to describe and prove"),
    model: Optional[str] = Form(None, description="Vision provider selector"),
    engine: ProofEngine = Depends(get_engine),
):
    """
    Describe an image with a vision model and store a proof of the description.

    Returns the description, the model that produced it, the proof timestamp
    and the content address of the stored proof record.
    """
    data = await read_image(request, image)
    result = await engine.generate(data, model or None)
    return GenerateResponse.from_result(result)


@router.post("/verify", response_model=VerifyResponse, response_model_exclude_none=True)
async def verify_proof(
    request: Request,
    image: Optional[UploadFile] = File(None, description="Image to verify"),
    engine: ProofEngine = Depends(get_engine),
):
    """
    Check whether a proof exists for an image and that the stored record matches it.
    """
    data = await read_image(request, image)
    verdict = await engine.verify(data)
    return VerifyResponse.from_verdict(verdict)


def internal_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_server_error", "message": "An unexpected error occurred"}
    )


async def proof_vault_error_handler(request: Request, exc: ProofVaultError):
    if not exc.exposed:
        logger.error("Internal failure",
                     url=str(request.url), error_code=exc.code, stage=exc.stage,
                     error=exc.message, exc_info=exc)
        return internal_error_response()

    logger.warning("Request failed",
                   url=str(request.url), error_code=exc.code, stage=exc.stage, error=exc.message)
    body = ErrorResponse(error=exc.code, message=exc.message, details=exc.details() or None)
    return JSONResponse(status_code=exc.http_status, content=body.model_dump(exclude_none=True))


async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception",
                 url=str(request.url), method=request.method, error=str(exc), exc_info=exc)
    return internal_error_response()


def create_app(settings: Optional[Settings] = None, engine: Optional[ProofEngine] = None) -> FastAPI:
    """Create the API. Pass ``engine`` to supply pre-built collaborators."""
    settings = settings or load_settings()

    app = FastAPI(
        title="AI Proof Vault API",
        description="Generate and verify proofs binding an image to an AI generated description",
        version=__version__,
        lifespan=lifespan,
        responses={
            400: {"model": ErrorResponse, "description": "Invalid request"},
            413: {"model": ErrorResponse, "description": "Image too large"},
            500: {"model": ErrorResponse, "description": "Internal Server Error"},
        }
    )
    app.state.settings = settings
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.add_exception_handler(ProofVaultError, proof_vault_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    @app.get("/", response_model=dict)
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "AI Proof Vault API",
            "version": __version__,
            "status": "running",
            "endpoints": ["/api/generate", "/api/verify", "/health"],
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint with index, store and provider status."""
        engine: ProofEngine = request.app.state.engine
        try:
            index_healthy = await asyncio.to_thread(engine.index.check_connection)
            store_health = await asyncio.to_thread(engine.store.health_check)

            components = {
                "index": "healthy" if index_healthy else "unhealthy",
                "store": "healthy" if store_health.get("available") else "unhealthy",
            }
            overall_status = "healthy" if all(s == "healthy" for s in components.values()) else "degraded"

            return HealthResponse(
                status=overall_status,
                version=__version__,
                components={
                    **components,
                    "store_health": store_health,
                    "providers": engine.providers.names(),
                    "default_provider": engine.default_provider,
                }
            )
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return HealthResponse(
                status="unhealthy",
                version=__version__,
                components={"error": str(e)}
            )

    return app


configure_logging(load_settings())
app = create_app()


if __name__ == "__main__":
    _settings = load_settings()
    uvicorn.run(
        "proof_vault.main:app",
        host=_settings.API_HOST,
        port=_settings.API_PORT,
        reload=_settings.DEBUG,
        log_config=None,  # We handle logging with structlog
    )
