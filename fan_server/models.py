"""
Data models for commands, device status, and API responses.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

MIN_SPEED = 1
MAX_SPEED = 5


class Device(str, Enum):
    """Devices the matcher can recognise. Only FAN is wired to hardware."""
    FAN = "fan"
    LIGHTS = "lights"
    UNKNOWN = "unknown"


class Action(str, Enum):
    """Supported actions."""
    ON = "on"
    OFF = "off"
    SPEED = "speed"
    GENERAL = "general"


class Confidence(str, Enum):
    """How certain the intent matcher is about its result."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SerialLinkState(str, Enum):
    """Lifecycle states of the serial link."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    FAILED = "failed"


def is_valid_speed(value: Any) -> bool:
    """True for integers in the fan's speed range (bools excluded)."""
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_SPEED <= value <= MAX_SPEED
    )


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys for API clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ParsedCommand(CamelModel):
    """Advisory result of the intent matcher. Never sent to the device."""
    device: Device
    action: Action
    value: Optional[int] = None
    confidence: Confidence
    original_text: str

    @model_validator(mode="after")
    def _check_value(self) -> "ParsedCommand":
        if self.action == Action.SPEED:
            if not is_valid_speed(self.value):
                raise ValueError(f"speed must be in {MIN_SPEED}..{MAX_SPEED}, got {self.value!r}")
        elif self.value is not None:
            raise ValueError(f"value is only allowed for speed, got {self.value!r}")
        return self


class FinalCommand(CamelModel):
    """
    Authoritative command accepted for dispatch.

    Always targets the fan, and carries a value only for speed.
    """
    device: Device = Device.FAN
    action: Action
    value: Optional[int] = None

    @model_validator(mode="after")
    def _check_command(self) -> "FinalCommand":
        if self.device != Device.FAN:
            raise ValueError(f"only fan commands can be dispatched, got {self.device.value!r}")
        if self.action == Action.SPEED:
            if not is_valid_speed(self.value):
                raise ValueError(f"speed must be in {MIN_SPEED}..{MAX_SPEED}, got {self.value!r}")
        elif self.action in (Action.ON, Action.OFF):
            if self.value is not None:
                raise ValueError(f"{self.action.value} takes no value, got {self.value!r}")
        else:
            raise ValueError(f"action {self.action.value!r} is not dispatchable")
        return self


class DeviceStatusReply(CamelModel):
    """Status line reported by the device. Used for logging only."""
    device: str
    fan_on: bool
    fan_speed: int = Field(ge=0, le=MAX_SPEED)
    pwm_value: int = Field(ge=0, le=255)


class SerialStatus(CamelModel):
    """Snapshot of the serial link for status reporting."""
    connected: bool
    port: str
    baud_rate: int
    state: SerialLinkState
    last_device_status: Optional[DeviceStatusReply] = None


class PipelineResult(BaseModel):
    """Outcome of classify + reconcile + dispatch for one request."""
    advisory: ParsedCommand
    final: Optional[FinalCommand] = None
    reply: str
    sent: bool = False


class TextRequest(BaseModel):
    """Typed instruction."""
    message: str
    context: Optional[str] = None


class CommandRequest(BaseModel):
    """Structured command forwarded to the classifier without dispatch."""
    command: str
    device: Optional[str] = None
    value: Optional[Any] = None
    context: Optional[str] = None


class PipelineResponse(CamelModel):
    """Response for /text and /voice."""
    success: bool = True
    message: Optional[str] = None
    transcription: Optional[str] = None
    original_command: Optional[ParsedCommand] = None
    final_command: Optional[FinalCommand] = None
    response: str
    esp32_sent: bool = Field(default=False, alias="esp32Sent")
    timestamp: datetime


class CommandEchoResponse(CamelModel):
    """Response for /command."""
    success: bool = True
    command: str
    device: Optional[str] = None
    value: Optional[Any] = None
    response: str
    timestamp: datetime


class RetryResponse(CamelModel):
    """Response for /retry-serial."""
    success: bool
    message: str
    port: str
    connected: bool


class StatusResponse(CamelModel):
    """Response for /status."""
    server: str
    status: str
    serial: SerialStatus
    endpoints: Dict[str, str]
    timestamp: datetime
