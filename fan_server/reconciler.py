"""
Final safety gate between classification and the device.

The advisory matcher result is only compared and logged. The classifier's
parsed reply is the authority, and it must still be a well-formed fan
command to pass.
"""
import logging
from typing import Optional

from pydantic import ValidationError

from .models import Action, Device, FinalCommand, ParsedCommand

logger = logging.getLogger(__name__)

DISPATCHABLE_ACTIONS = (Action.ON, Action.OFF, Action.SPEED)


def _agrees(advisory: ParsedCommand, final: FinalCommand) -> bool:
    return (
        advisory.device == final.device
        and advisory.action == final.action
        and advisory.value == final.value
    )


def reconcile(advisory: ParsedCommand, final: Optional[FinalCommand]) -> Optional[FinalCommand]:
    """
    Pick the command to dispatch, or None.

    Args:
        advisory: Intent matcher result (informational only)
        final: Parsed classifier reply, or None if the reply was rejected

    Returns:
        A re-validated fan command, or None
    """
    if final is None:
        logger.info(
            f"No command from classifier (matcher suggested "
            f"{advisory.device.value}/{advisory.action.value}, {advisory.confidence.value})"
        )
        return None

    if final.device != Device.FAN or final.action not in DISPATCHABLE_ACTIONS:
        logger.warning(f"Rejected non-dispatchable command: {final.device}/{final.action}")
        return None

    # Objects built with model_construct() skip validation; check again
    try:
        checked = FinalCommand.model_validate(final.model_dump())
    except ValidationError as exc:
        logger.warning(f"Rejected malformed command {final!r}: {exc.error_count()} validation error(s)")
        return None

    if not _agrees(advisory, checked):
        logger.info(
            f"Matcher and classifier disagree: matcher={advisory.device.value}/"
            f"{advisory.action.value}/{advisory.value}, classifier={checked.action.value}/{checked.value}"
        )

    return checked
