"""
Fan Server - voice and text control for a serial-attached fan.
Main FastAPI application.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from .audio.transcriber import (
    Transcriber,
    TranscriberBusyError,
    TranscriptionError,
    TranscriptionTimeoutError,
)
from .classifier import ClassifierError, ClassifierTimeoutError, ConstrainedClassifier
from .config import settings
from .integration.serial_link import SerialLinkManager, list_available_ports
from .models import (
    CommandEchoResponse,
    CommandRequest,
    PipelineResponse,
    PipelineResult,
    RetryResponse,
    SerialLinkState,
    SerialStatus,
    StatusResponse,
    TextRequest,
)
from .pipeline import CommandPipeline

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(settings.log_file) if settings.log_file else logging.StreamHandler(),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

SERVER_NAME = "fan-server"
ENDPOINTS = {
    "voice": "/voice",
    "text": "/text",
    "health": "/health",
    "command": "/command",
    "retry": "/retry-serial",
    "ports": "/serial-ports",
}

# Global component instances
serial_link: Optional[SerialLinkManager] = None
pipeline: Optional[CommandPipeline] = None
transcriber: Optional[Transcriber] = None

_started_at = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    global serial_link, pipeline, transcriber

    # Startup
    logger.info("Starting fan server...")

    serial_link = SerialLinkManager(
        port=settings.serial_port,
        baud_rate=settings.serial_baud_rate,
        read_timeout=settings.serial_read_timeout,
        retry_delay=settings.serial_retry_delay,
    )
    # A missing device must not stop the server; the link reports its own failure
    await asyncio.to_thread(serial_link.open)

    try:
        classifier = ConstrainedClassifier(
            model=settings.classifier_model,
            prompt_path=settings.classifier_prompt_path,
            temperature=settings.classifier_temperature,
            max_tokens=settings.classifier_max_tokens,
            timeout=settings.classifier_timeout_seconds,
            unrecognized_policy=settings.unrecognized_policy,
        )
        pipeline = CommandPipeline(classifier=classifier, link=serial_link)
        logger.info(f"Classifier initialized with model: {settings.classifier_model}")
    except Exception as exc:
        logger.error(f"Failed to initialize classifier: {exc}", exc_info=True)
        pipeline = None

    try:
        transcriber = Transcriber(
            model_size=settings.whisper_model,
            device=settings.whisper_device,
            compute_type=settings.whisper_compute_type,
            timeout=settings.transcription_timeout_seconds,
            max_workers=settings.transcription_workers,
        )
        # Pre-load model to avoid latency on first request
        transcriber.load_model()
        logger.info(f"Transcriber initialized with model: {settings.whisper_model}")
    except Exception as exc:
        logger.error(f"Failed to initialize Transcriber: {exc}", exc_info=True)
        transcriber = None

    yield

    # Shutdown
    logger.info("Shutting down fan server...")
    if serial_link:
        await asyncio.to_thread(serial_link.close)


# Create FastAPI app
app = FastAPI(
    title="Fan Server",
    description="Voice and text control for a serial-attached fan",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _require_pipeline() -> CommandPipeline:
    if not pipeline:
        raise HTTPException(status_code=503, detail="Classifier not available")
    return pipeline


async def _run_pipeline(text: str, context: Optional[str]) -> PipelineResult:
    """Run the command pipeline, mapping classifier failures to HTTP errors."""
    active = _require_pipeline()
    try:
        return await active.process(text, context=context)
    except ClassifierTimeoutError as exc:
        logger.error(f"Classifier timed out: {exc}")
        raise HTTPException(status_code=504, detail=str(exc))
    except ClassifierError as exc:
        logger.error(f"Classifier failed: {exc}", exc_info=True)
        raise HTTPException(status_code=502, detail=str(exc))


@app.get("/health")
async def health():
    """Liveness probe for the device and clients."""
    return {
        "status": "ok",
        "timestamp": _now().isoformat(),
        "uptime": round(time.monotonic() - _started_at, 3),
    }


@app.post("/text", response_model=PipelineResponse)
async def process_text(request: TextRequest):
    """
    Process a typed instruction.

    Returns:
        Advisory and final command, the classifier reply, and whether the
        command reached the device.
    """
    if not request.message or not request.message.strip():
        raise HTTPException(status_code=400, detail="No message provided")

    logger.info(f"Processing text message: {request.message!r}")
    result = await _run_pipeline(request.message, request.context)

    return PipelineResponse(
        message=request.message,
        original_command=result.advisory,
        final_command=result.final,
        response=result.reply,
        esp32_sent=result.sent,
        timestamp=_now(),
    )


@app.post("/voice", response_model=PipelineResponse)
async def process_voice(
    audio: Optional[UploadFile] = File(None),
    context: Optional[str] = Form(None),
):
    """
    Process a spoken instruction: transcribe, classify, dispatch.

    Transcription and classification fail independently (separate errors
    and timeouts); neither failure dispatches anything.
    """
    if audio is None:
        raise HTTPException(status_code=400, detail="No audio file provided")

    mime_type = audio.content_type or ""
    if not mime_type.startswith("audio/"):
        raise HTTPException(status_code=400, detail="Only audio files are allowed")

    if audio.size is not None and audio.size > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="File too large")
    # Never hold more than the limit in memory, whatever size was declared
    payload = await audio.read(settings.max_upload_bytes + 1)
    if len(payload) > settings.max_upload_bytes:
        raise HTTPException(status_code=413, detail="File too large")

    if not transcriber:
        raise HTTPException(status_code=503, detail="Transcriber not initialized")
    _require_pipeline()

    logger.info(f"Processing audio file: {audio.filename} ({mime_type}, {len(payload)} bytes)")
    try:
        transcript = await transcriber.transcribe(payload, mime_type)
    except TranscriberBusyError as exc:
        logger.warning(f"Transcription refused: {exc}")
        raise HTTPException(status_code=503, detail=str(exc))
    except TranscriptionTimeoutError as exc:
        logger.error(f"Transcription timed out: {exc}")
        raise HTTPException(status_code=504, detail=str(exc))
    except TranscriptionError as exc:
        logger.error(f"Transcription failed: {exc}", exc_info=True)
        raise HTTPException(status_code=502, detail=str(exc))

    logger.info(f"Transcribed text: {transcript!r}")
    if not transcript or not transcript.strip():
        raise HTTPException(status_code=422, detail="No speech detected in audio")

    result = await _run_pipeline(transcript, context)

    return PipelineResponse(
        transcription=transcript,
        original_command=result.advisory,
        final_command=result.final,
        response=result.reply,
        esp32_sent=result.sent,
        timestamp=_now(),
    )


@app.post("/command", response_model=CommandEchoResponse)
async def process_command(request: CommandRequest):
    """
    Ask the classifier about a structured command without dispatching it.
    """
    if not request.command or not request.command.strip():
        raise HTTPException(status_code=400, detail="No command provided")

    active = _require_pipeline()

    prompt_text = f"Command: {request.command}"
    if request.device:
        prompt_text += f", Device: {request.device}"
    if request.value is not None:
        prompt_text += f", Value: {request.value}"

    try:
        reply = await active.classifier.classify(prompt_text, context=request.context)
    except ClassifierTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc))
    except ClassifierError as exc:
        logger.error(f"Command processing error: {exc}", exc_info=True)
        raise HTTPException(status_code=502, detail=str(exc))

    return CommandEchoResponse(
        command=request.command,
        device=request.device,
        value=request.value,
        response=reply,
        timestamp=_now(),
    )


def _serial_status() -> SerialStatus:
    if serial_link:
        return serial_link.status()
    return SerialStatus(
        connected=False,
        port=settings.serial_port,
        baud_rate=settings.serial_baud_rate,
        state=SerialLinkState.DISCONNECTED,
    )


@app.get("/status", response_model=StatusResponse)
async def status():
    """Server and serial link status."""
    return StatusResponse(
        server=SERVER_NAME,
        status="running",
        serial=_serial_status(),
        endpoints=ENDPOINTS,
        timestamp=_now(),
    )


@app.post("/retry-serial", response_model=RetryResponse)
async def retry_serial():
    """Manually close and reopen the serial link."""
    if not serial_link:
        raise HTTPException(status_code=503, detail="Serial link not initialized")

    connected = await asyncio.to_thread(serial_link.retry)
    return RetryResponse(
        success=True,
        message="Serial connection retry initiated",
        port=serial_link.port,
        connected=connected,
    )


@app.get("/serial-ports")
async def serial_ports():
    """List serial ports visible to the OS."""
    ports = await asyncio.to_thread(list_available_ports)
    return {
        "count": len(ports),
        "configured": settings.serial_port,
        "ports": ports,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fan_server.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload
    )
