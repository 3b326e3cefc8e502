"""
Codeweaver - Main Application

Culturally grounded coding stories for young learners, generated on demand
and served from cache (or default content) when the generator is unreachable.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uvicorn
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
import logging
import traceback
import sys

from codeweaver import __version__
from codeweaver.config import Settings, get_settings
from codeweaver.models import GenerationOptions
from codeweaver.services.adaptive_rate_limiter import AdaptiveRateLimiter
from codeweaver.services.blob_storage import create_blob_store
from codeweaver.services.concept_vocabulary import ConceptVocabulary
from codeweaver.services.connectivity import StaticConnectivity, HttpConnectivityProbe
from codeweaver.services.events import narrative_events
from codeweaver.services.foundry import FoundryTextGenerator
from codeweaver.services.generation_client import GenerationClient
from codeweaver.services.logger import init_logger, NarrativeLogger
from codeweaver.services.orchestrator import NarrativeOrchestrator
from codeweaver.services.prompt_builder import PromptBuilder
from codeweaver.services.story_cache import StoryCache
from codeweaver.services.story_history import StoryHistory
from codeweaver.services.validation_service import ContentValidator
from codeweaver.api.routes import router, set_orchestrator

# Configure logging to both file and console
log_dir = Path("logs")
log_dir.mkdir(exist_ok=True)
log_file = log_dir / f"codeweaver_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

# Create formatters
file_formatter = logging.Formatter(
    '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
console_formatter = logging.Formatter('%(message)s')

# File handler (detailed logs)
file_handler = logging.FileHandler(log_file, encoding='utf-8')
file_handler.setLevel(logging.DEBUG)
file_handler.setFormatter(file_formatter)

# Console handler (user-friendly output)
console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.INFO)
console_handler.setFormatter(console_formatter)

# Configure root logger
logging.basicConfig(
    level=logging.DEBUG,
    handlers=[file_handler, console_handler]
)

logger = logging.getLogger(__name__)
logger.info(f"📝 Logging to: {log_file}")


def build_orchestrator(settings: Settings, narrative_logger: NarrativeLogger) -> NarrativeOrchestrator:
    """Wire every pipeline component from settings"""
    if settings.force_offline:
        connectivity = StaticConnectivity(online=False)
        print("📴 Forced offline: serving cached and default content only")
    elif not settings.generation_api_key:
        connectivity = StaticConnectivity(online=False)
        print("⚠️  GENERATION_API_KEY is missing! Serving cached and default content only.")
        print("   💡 Set GENERATION_API_KEY in .env file")
    else:
        connectivity = HttpConnectivityProbe(
            settings.get_probe_url(),
            cache_seconds=settings.connectivity_check_interval_seconds,
        )

    generator = FoundryTextGenerator(
        endpoint=settings.generation_endpoint,
        api_key=settings.generation_api_key,
        api_version=settings.generation_api_version,
        model=settings.generation_model,
    )

    # Starts at 10 concurrent, scales down on 429s, scales up after sustained success
    rate_limiter = AdaptiveRateLimiter(
        initial_max_concurrent=10,
        min_concurrent=1,
        max_concurrent_ceiling=20
    )

    options = GenerationOptions(
        timeout=settings.generation_timeout_seconds,
        max_retries=settings.generation_max_retries,
        total_budget=settings.generation_latency_budget_seconds,
    )
    client = GenerationClient(
        generator,
        connectivity,
        rate_limiter=rate_limiter,
        options=options,
        narrative_logger=narrative_logger,
    )

    vocabulary = ConceptVocabulary.load(settings.concept_vocabulary_path)
    blob_store = create_blob_store(settings)
    cache = StoryCache(
        blob_store=blob_store,
        max_story_entries=settings.max_story_entries,
        max_branch_entries=settings.max_branch_entries,
        narrative_logger=narrative_logger,
    )

    return NarrativeOrchestrator(
        prompt_builder=PromptBuilder(
            max_output_tokens=settings.generation_max_tokens,
            temperature=settings.generation_temperature,
        ),
        client=client,
        validator=ContentValidator(vocabulary),
        cache=cache,
        connectivity=connectivity,
        events=narrative_events,
        narrative_logger=narrative_logger,
        options=options,
        request_timeout=settings.request_timeout_seconds,
        history=StoryHistory(blob_store=blob_store),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle management for the application.

    Builds the orchestrator on startup, flushes durable cache writes on shutdown.
    """
    settings = get_settings()

    print("🧵 Initializing Codeweaver...")

    app_logger = init_logger(settings=settings)

    debug_flags = []
    if settings.debug_storage:
        debug_flags.append("Storage")
    if settings.debug_api_calls:
        debug_flags.append("API Calls")
    if debug_flags:
        print(f"🐛 Debug logging enabled: {', '.join(debug_flags)}")
        print(f"📊 Debug logs: {settings.debug_log_dir}/")

    orchestrator = build_orchestrator(settings, app_logger)
    set_orchestrator(orchestrator)
    print(f"📦 Story cache: {settings.blob_backend} backend "
          f"({settings.max_story_entries} stories / {settings.max_branch_entries} branch sets)")

    # Drop entries older than the configured age on startup
    purged = await orchestrator.cache.purge_older_than(timedelta(days=settings.cache_max_age_days))
    if purged:
        print(f"🧹 Purged {purged} stale cache entries")

    print(f"🧵 Codeweaver ready on port {settings.port}!")
    print(f"📚 API Documentation: http://localhost:{settings.port}/docs")

    yield

    # Shutdown
    print("👋 Shutting down Codeweaver...")
    await orchestrator.cache.flush()
    orchestrator.client.rate_limiter.log_stats()
    set_orchestrator(None)


# Create FastAPI app
app = FastAPI(
    title="Codeweaver",
    description="""
    Culturally grounded coding stories for young learners.

    Features:
    - Stories that teach sequences, loops, conditionals and more
    - Branching choices and continuations with embedded coding challenges
    - Bounded story cache with offline default content
    """,
    version=__version__,
    lifespan=lifespan
)

# CORS middleware
# Configure allowed origins from environment variable (default: "*" for all origins)
_settings = get_settings()
_cors_origins = (
    ["*"] if _settings.cors_allowed_origins == "*"
    else [origin.strip() for origin in _settings.cors_allowed_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Validation error handler - log details for debugging
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    error_details = []
    for error in errors:
        input_val = error.get('input', 'N/A')
        # Truncate long inputs for readability
        if isinstance(input_val, str) and len(input_val) > 100:
            input_val = input_val[:100] + "..."
        error_details.append(f"{error['loc']}: {error['msg']} (input: {input_val})")

    logger.error(f"❌ Validation Error on {request.url.path}: " + " | ".join(error_details))

    return JSONResponse(
        status_code=422,
        content={"detail": [
            {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
            for error in errors
        ]}
    )


# Global exception handler - catch unhandled exceptions to prevent crashes
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch all unhandled exceptions to prevent server crashes.
    Logs the error and returns a friendly error message.
    """
    error_id = datetime.now().strftime('%Y%m%d_%H%M%S_%f')

    logger.error(f"❌ UNHANDLED EXCEPTION [{error_id}]")
    logger.error(f"   Path: {request.url.path}")
    logger.error(f"   Method: {request.method}")
    logger.error(f"   Error: {type(exc).__name__}: {exc}")
    logger.error(f"   Traceback:\n{traceback.format_exc()}")

    # NOTE: Never expose exception details to clients; use error_id to find them in the logs
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred. Please try again."
        }
    )


# Include routes
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint - API info"""
    return {
        "message": "Welcome to Codeweaver!",
        "docs": "/docs",
        "health": "/api/health",
        "version": __version__
    }


def main():
    """Run the application"""
    settings = get_settings()

    uvicorn.run(
        "codeweaver.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
