"""
Line protocol spoken with the fan controller.

Host to device: one compact JSON object per line, e.g.
    {"device":"fan","action":"speed","value":3}

Device to host: one JSON status object per line, e.g.
    {"device":"esp32","fanOn":true,"fanSpeed":3,"pwmValue":127}
"""
import json
import logging
from typing import Optional

from pydantic import ValidationError

from .models import Action, DeviceStatusReply, FinalCommand, MAX_SPEED, MIN_SPEED, is_valid_speed

logger = logging.getLogger(__name__)

BAUD_RATE = 115200
LINE_TERMINATOR = "\n"
ENCODING = "utf-8"

# Duty cycle the firmware applies per speed step
PWM_TABLE = {1: 51, 2: 89, 3: 127, 4: 191, 5: 255}


def encode_command(command: FinalCommand) -> bytes:
    """Serialize a command to a single newline-terminated wire line."""
    payload = {"device": command.device.value, "action": command.action.value}
    if command.action == Action.SPEED:
        payload["value"] = command.value
    line = json.dumps(payload, separators=(",", ":"))
    return (line + LINE_TERMINATOR).encode(ENCODING)


def decode_status_line(line: str) -> Optional[DeviceStatusReply]:
    """
    Best-effort decode of an inbound status line.

    Returns None for blank lines, non-JSON text (boot banners, debug prints)
    and JSON that does not look like a status report.
    """
    text = line.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug(f"Device line is not JSON: {text!r}")
        return None
    if not isinstance(data, dict):
        logger.debug(f"Device line is not a JSON object: {text!r}")
        return None
    try:
        return DeviceStatusReply.model_validate(data)
    except ValidationError as exc:
        logger.warning(f"Undecodable device status {text!r}: {exc.error_count()} validation error(s)")
        return None


def pwm_for_speed(speed: int) -> int:
    """PWM duty the firmware applies for a fan speed (1 -> 51 ... 5 -> 255)."""
    if not is_valid_speed(speed):
        raise ValueError(f"speed must be in {MIN_SPEED}..{MAX_SPEED}, got {speed!r}")
    return PWM_TABLE[speed]
