"""
Command dispatch to the device link.
"""
import logging
from typing import Optional

from .integration.base import DeviceLink
from .models import Device, FinalCommand

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """Sends validated commands over a device link, one attempt each."""

    def __init__(self, link: DeviceLink):
        self.link = link

    def dispatch(self, command: Optional[FinalCommand]) -> bool:
        """
        Send a command to the device.

        Args:
            command: Reconciled command, or None

        Returns:
            True if the link accepted the write. No retries are made.
        """
        if command is None or command.device != Device.FAN:
            logger.info("No valid command to send to the device")
            return False

        sent = self.link.send(command)
        if not sent:
            logger.warning(f"Command {command.action.value} not delivered: device link unavailable")
        return sent
