"""
Configuration management for the fan server.
Supports environment variables and a .env file.
"""
import os
from typing import Optional
from pydantic_settings import BaseSettings

from .protocol import BAUD_RATE


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = int(os.getenv("PORT", 3000))
    reload: bool = False

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: Optional[str] = os.getenv("LOG_FILE", "fan_server.log")

    # Serial link. The baud rate is fixed by the firmware.
    serial_port: str = os.getenv("SERIAL_PORT", "COM3")
    serial_baud_rate: int = BAUD_RATE
    serial_read_timeout: float = float(os.getenv("SERIAL_READ_TIMEOUT", 1.0))
    serial_retry_delay: float = float(os.getenv("SERIAL_RETRY_DELAY", 1.0))

    # Constrained classifier
    classifier_model: str = os.getenv("CLASSIFIER_MODEL", "qwen2.5:3b")
    classifier_prompt_path: str = os.getenv(
        "CLASSIFIER_PROMPT_PATH", "fan_server/classifier/prompts/classifier.txt"
    )
    classifier_temperature: float = float(os.getenv("CLASSIFIER_TEMPERATURE", 0.0))
    classifier_max_tokens: int = int(os.getenv("CLASSIFIER_MAX_TOKENS", 16))
    classifier_timeout_seconds: float = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", 15.0))
    unrecognized_policy: str = os.getenv("UNRECOGNIZED_POLICY", "fan_off")  # "fan_off" | "no_command"

    # Speech to Text (Faster Whisper)
    whisper_model: str = os.getenv("WHISPER_MODEL", "tiny.en")
    whisper_device: str = os.getenv("WHISPER_DEVICE", "cpu")  # "cuda" or "cpu"
    whisper_compute_type: str = os.getenv("WHISPER_COMPUTE_TYPE", "int8")  # "float16" for cuda, "int8" for cpu
    transcription_timeout_seconds: float = float(os.getenv("TRANSCRIPTION_TIMEOUT_SECONDS", 30.0))
    # Timed-out jobs keep their worker; past this many, /voice answers 503
    transcription_workers: int = int(os.getenv("TRANSCRIPTION_WORKERS", 2))

    # Uploads
    max_upload_bytes: int = 25 * 1024 * 1024

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
