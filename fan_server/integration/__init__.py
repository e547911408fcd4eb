"""
Device link layer.
"""
from .base import DeviceLink
from .serial_link import SerialLinkManager, list_available_ports

__all__ = ["DeviceLink", "SerialLinkManager", "list_available_ports"]
