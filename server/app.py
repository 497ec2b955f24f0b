"""
FastAPI server for the voice parts finder.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /voice: Twilio incoming-call webhook (greeting + speech gather)
- POST /process-speech: Twilio speech result webhook
- POST /handle-choice: Twilio keypad digit webhook
- POST /api/parse-and-search: Local UI lookup by typed transcript
"""

import asyncio
import sys

# 2025 Performance: Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import structlog
import uvicorn

from src.partfinder.catalog import CatalogError, get_catalog
from src.partfinder.config import get_config, init_config, ConfigError
from src.partfinder.extract import FieldExtractor
from src.partfinder.flow import CallFlowController
from src.partfinder.twiml import (
    HANDLE_CHOICE_PATH,
    PROCESS_SPEECH_PATH,
    VOICE_PATH,
    Prompt,
    Redirect,
    render_prompt,
)


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)

TELEPHONY_PATHS = (VOICE_PATH, PROCESS_SPEECH_PATH, HANDLE_CHOICE_PATH)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_calls: int = 0
    total_turns: int = 0
    errors: int = 0

    def to_dict(self, controller: Optional[CallFlowController] = None) -> Dict[str, Any]:
        data = {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "total_turns": self.total_turns,
            "errors": self.errors,
        }
        if controller is not None:
            data["active_sessions"] = len(controller.sessions)
            data["extraction_failures"] = controller.extraction_failures
        return data


# Global metrics
metrics = ServerMetrics()

_controller: Optional[CallFlowController] = None


def get_controller() -> CallFlowController:
    """
    Get or create the call flow controller.

    Raises:
        CatalogError: If the catalog cannot be loaded
    """
    global _controller

    if _controller is None:
        config = get_config()
        _controller = CallFlowController(
            catalog=get_catalog(config.catalog_path),
            extractor=FieldExtractor(config),
            config=config,
        )

    return _controller


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting voice parts finder server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        # Load the catalog and build the call flow (fails fast on a bad catalog)
        controller = get_controller()

        logger.info(
            "Server ready",
            port=config.port,
            catalog_items=len(controller.catalog),
            extraction_enabled=controller.extractor.is_enabled,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except CatalogError as e:
        logger.error("Catalog error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...")


# Create FastAPI app
app = FastAPI(
    title="Voice Parts Finder",
    description="Phone-based auto parts lookup and quoting over Twilio",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_config().cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


class ParseAndSearchRequest(BaseModel):
    transcript: Any = None


def _twiml(prompt: Prompt) -> Response:
    return Response(
        content=render_prompt(prompt, get_config()),
        media_type="application/xml",
    )


async def _webhook_params(request: Request) -> Dict[str, str]:
    """Twilio sends form fields on POST and query parameters on GET."""
    params = {k: str(v) for k, v in request.query_params.items()}
    if request.method == "POST":
        form = await request.form()
        params.update({k: str(v) for k, v in form.items()})
    return params


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
        }
    )


@app.get("/metrics")
async def get_metrics(controller: CallFlowController = Depends(get_controller)) -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict(controller))


@app.post(VOICE_PATH)
@app.get(VOICE_PATH)
async def voice(
    request: Request,
    controller: CallFlowController = Depends(get_controller),
) -> Response:
    """Incoming call: greet and gather speech."""
    params = await _webhook_params(request)
    call_sid = params.get("CallSid", "")

    metrics.total_turns += 1
    if call_sid and controller.sessions.get(call_sid) is None:
        metrics.total_calls += 1

    logger.info("Voice turn", call_sid=call_sid)
    return _twiml(controller.handle_voice(call_sid))


@app.post(PROCESS_SPEECH_PATH)
async def process_speech(
    request: Request,
    controller: CallFlowController = Depends(get_controller),
) -> Response:
    """Speech captured by <Gather input="speech">."""
    params = await _webhook_params(request)
    call_sid = params.get("CallSid", "")
    speech = params.get("SpeechResult", "")

    metrics.total_turns += 1
    logger.info("Speech turn", call_sid=call_sid, speech=speech)
    prompt = await controller.handle_speech(call_sid, speech)
    return _twiml(prompt)


@app.post(HANDLE_CHOICE_PATH)
async def handle_choice(
    request: Request,
    controller: CallFlowController = Depends(get_controller),
) -> Response:
    """Keypad digit captured by <Gather numDigits="1">."""
    params = await _webhook_params(request)
    call_sid = params.get("CallSid", "")
    digits = params.get("Digits", "")

    metrics.total_turns += 1
    logger.info("Choice turn", call_sid=call_sid, digits=digits)
    return _twiml(controller.handle_choice(call_sid, digits))


@app.post("/api/parse-and-search")
async def parse_and_search(
    body: Optional[ParseAndSearchRequest] = None,
    controller: CallFlowController = Depends(get_controller),
) -> JSONResponse:
    """Parse a typed transcript and return matching parts."""
    transcript = body.transcript if body else None
    if not isinstance(transcript, str) or not transcript.strip():
        return JSONResponse(status_code=400, content={"error": "transcript required"})

    parsed, results = await controller.parse_and_search(transcript)
    return JSONResponse(
        content={
            "parsed": parsed.model_dump(),
            "results": [item.to_dict() for item in results],
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> Response:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    # A caller must always hear something; never hand Twilio a 500.
    if request.url.path in TELEPHONY_PATHS:
        return _twiml(
            Prompt(
                says=["Sorry, something went wrong. Let us start over."],
                terminal=Redirect(VOICE_PATH),
            )
        )

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()

    configure_logging(config.log_level)

    logger.info(
        "Starting server",
        port=config.port,
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
