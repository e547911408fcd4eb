"""
Audio transcription module using Faster Whisper.
"""
import asyncio
import io
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import BinaryIO, Optional, Union

from faster_whisper import WhisperModel

logger = logging.getLogger(__name__)


class TranscriptionError(Exception):
    """Raised when speech-to-text fails."""


class TranscriptionTimeoutError(TranscriptionError):
    """Raised when speech-to-text does not finish in time."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Transcription did not finish within {timeout:.1f}s")


class TranscriberBusyError(TranscriptionError):
    """Raised when every transcription worker is still occupied."""

    def __init__(self, in_flight: int):
        self.in_flight = in_flight
        super().__init__(f"Transcriber busy: {in_flight} job(s) still running")


class Transcriber:
    """
    Handles offline speech-to-text using Faster Whisper.

    The model is loaded once upon initialization.
    Transcriptions are CPU-intensive and run in a thread pool of
    `max_workers` threads. Whisper inference cannot be interrupted, so a
    job that times out keeps its worker until it finishes on its own.
    Jobs are counted until their thread returns, and new requests are
    refused with TranscriberBusyError while all workers are occupied
    rather than queueing behind a hung job.
    """

    def __init__(
        self,
        model_size: str = "tiny.en",
        device: str = "cpu",
        compute_type: str = "int8",
        timeout: Optional[float] = 30.0,
        max_workers: int = 2,
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.model_size = model_size
        self.device = device
        self.compute_type = compute_type
        self.timeout = timeout
        self.max_workers = max_workers
        self.model = None

        # Thread pool for blocking model operations
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="whisper")
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        """Jobs submitted and not yet finished, timed-out ones included."""
        with self._in_flight_lock:
            return self._in_flight

    def load_model(self):
        """
        Load the model. Errors propagate so the caller knows if
        initialization failed.
        """
        logger.info(f"Loading Whisper model: {self.model_size} ({self.device}/{self.compute_type})")
        # faster-whisper downloads the model automatically if not present in cache
        self.model = WhisperModel(
            self.model_size,
            device=self.device,
            compute_type=self.compute_type
        )
        logger.info("Whisper model loaded successfully")

    def transcribe_file(self, file_path_or_obj: Union[str, BinaryIO]) -> str:
        """
        Transcribe an audio file or file-like object.
        BLOCKING method - run in executor.
        """
        if not self.model:
            raise RuntimeError("Transcriber model not loaded")

        segments, info = self.model.transcribe(
            file_path_or_obj,
            beam_size=5,
            vad_filter=True,  # Filter out silence
            vad_parameters=dict(min_silence_duration_ms=500)
        )

        logger.debug(f"Detected language: {info.language} with probability {info.language_probability}")

        # Segments is a generator, so we must iterate to actually run inference
        text_segments = [segment.text for segment in segments]
        return " ".join(text_segments).strip()

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav") -> str:
        """
        Transcribe raw audio bytes.

        The container is detected by the decoder; mime_type is only checked
        for being audio.

        Raises:
            TranscriberBusyError: every worker is still occupied.
            TranscriptionTimeoutError: no result within self.timeout seconds.
            TranscriptionError: the audio could not be transcribed.
        """
        if not mime_type or not mime_type.startswith("audio/"):
            raise TranscriptionError(f"Unsupported media type: {mime_type!r}")
        if not audio:
            raise TranscriptionError("Empty audio payload")

        with self._in_flight_lock:
            if self._in_flight >= self.max_workers:
                raise TranscriberBusyError(self._in_flight)
            self._in_flight += 1

        logger.info(f"Transcribing {len(audio)} bytes of {mime_type}")
        try:
            job = self._executor.submit(self.transcribe_file, io.BytesIO(audio))
        except RuntimeError as exc:
            self._job_finished(None)
            raise TranscriptionError(f"Transcriber unavailable: {exc}") from exc
        # Counted down when the thread returns, not when the caller gives up
        job.add_done_callback(self._job_finished)

        try:
            return await asyncio.wait_for(asyncio.wrap_future(job), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise TranscriptionTimeoutError(self.timeout) from exc
        except Exception as exc:
            raise TranscriptionError(f"Failed to convert speech to text: {exc}") from exc

    def _job_finished(self, _job) -> None:
        with self._in_flight_lock:
            self._in_flight -= 1
