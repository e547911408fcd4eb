"""
Base layer for device links.
A device link owns the connection to one physical device.
"""
from abc import ABC, abstractmethod

from ..models import FinalCommand, SerialLinkState, SerialStatus


class DeviceLink(ABC):
    """Abstract base class for device links."""

    def __init__(self):
        self.name = self.__class__.__name__

    @property
    @abstractmethod
    def state(self) -> SerialLinkState:
        """Current lifecycle state."""
        pass

    @property
    def is_open(self) -> bool:
        """True when commands can be written."""
        return self.state == SerialLinkState.OPEN

    @abstractmethod
    def open(self) -> bool:
        """
        Acquire the connection. Must not raise.

        Returns:
            True if the link is open afterwards
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the connection."""
        pass

    @abstractmethod
    def retry(self) -> bool:
        """
        Close if open, then open again.

        Returns:
            True if the link is open afterwards
        """
        pass

    @abstractmethod
    def send(self, command: FinalCommand) -> bool:
        """
        Write one command to the device.

        Returns:
            True if the command was written, False otherwise
        """
        pass

    @abstractmethod
    def status(self) -> SerialStatus:
        """Snapshot of the link for status reporting."""
        pass
