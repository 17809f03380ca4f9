"""Course Chat Backend Application.

This is the main entry point for the LMS course chat service: the
real-time chat core of the learning management system, plus the REST
history and search API that the single-page client uses alongside it.

Modules:
    - chat: WebSocket course rooms, message lifecycle, history/search REST
    - courses: Course membership directory (DuckDB)
    - auth: Bearer credential verification (JWT)
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.auth.service import get_verifier
from app.chat.history_router import router as history_router
from app.chat.manager import registry, run_typing_sweeper
from app.chat.router import router as chat_router
from app.chat.store import MessageStore
from app.config import get_config
from app.courses.service import CourseDirectory
from app.errors import AuthenticationError, ChatError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# urllib3/httpx/httpcore log every TCP connection; uvicorn.access logs
# every history poll.
for _noisy in (
    "urllib3",
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in lms.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    directory = CourseDirectory.get_instance(config.database.directory_db_path)
    MessageStore.get_instance(config.database.chat_db_path)
    if config.database.seed_file:
        directory.load_seed(config.database.seed_file)
    get_verifier()

    sweeper = asyncio.create_task(
        run_typing_sweeper(registry, config.chat.typing_sweep_interval_seconds)
    )
    logger.info(
        f"Course chat ready on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Course Chat API",
    description="Real-time course chat for the learning management system",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Map domain errors to ``{"error": code, "message": ...}`` responses."""
    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)


# Register all routers
app.include_router(chat_router)
app.include_router(history_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok", "connections": registry.connection_count}
