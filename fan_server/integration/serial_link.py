"""
Serial link to the fan controller.

Owns the single serial connection: open/close, manual retry, serialized
writes, and a background thread that logs the status lines the device
reports. Reconnection is never automatic; a failed or dropped link stays
down until retry() is called.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import serial
from serial.tools import list_ports

from ..models import DeviceStatusReply, FinalCommand, SerialLinkState, SerialStatus
from ..protocol import BAUD_RATE, ENCODING, decode_status_line, encode_command
from .base import DeviceLink

logger = logging.getLogger(__name__)

StatusListener = Callable[[DeviceStatusReply], None]

# Errors pyserial raises for an unusable port. TypeError shows up when the
# port is closed underneath a blocking read.
_IO_ERRORS = (serial.SerialException, OSError)
_READ_ERRORS = _IO_ERRORS + (TypeError,)


def list_available_ports() -> List[Dict[str, str]]:
    """Return the serial ports currently visible to the OS."""
    return [
        {
            "path": info.device,
            "manufacturer": info.manufacturer or "Unknown",
            "description": info.description or "",
        }
        for info in list_ports.comports()
    ]


class SerialLinkManager(DeviceLink):
    """
    Manages the serial connection to the device.

    State transitions:
        disconnected --open()--> connecting --ok--> open
        connecting --error--> failed
        open --I/O error, close()--> disconnected
        failed/disconnected --retry()--> connecting

    Writes are serialized with a lock so concurrent callers never
    interleave partial lines. The state lock guards the state and the
    connection handle, and is never held while writing.
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = BAUD_RATE,
        read_timeout: float = 1.0,
        retry_delay: float = 1.0,
        serial_factory: Optional[Callable[..., Any]] = None,
        status_listeners: Optional[List[StatusListener]] = None,
    ):
        super().__init__()
        self.port = port
        self.baud_rate = baud_rate
        self.read_timeout = read_timeout
        self.retry_delay = retry_delay
        self._serial_factory = serial_factory or serial.Serial
        self.status_listeners: List[StatusListener] = list(status_listeners or [])

        self._state = SerialLinkState.DISCONNECTED
        self._state_lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._connection: Optional[Any] = None
        self._reader: Optional[threading.Thread] = None

        self.last_status: Optional[DeviceStatusReply] = None
        self.last_error: Optional[str] = None

    @property
    def state(self) -> SerialLinkState:
        return self._state

    def _set_state(self, new_state: SerialLinkState) -> None:
        if new_state != self._state:
            logger.debug(f"Serial link {self.port}: {self._state.value} -> {new_state.value}")
        self._state = new_state

    def open(self, port: Optional[str] = None, baud_rate: Optional[int] = None) -> bool:
        """
        Open the serial port and start the reader thread.

        Failures are logged and reflected in the state; nothing is raised.

        Args:
            port: Port to use from now on (defaults to the configured port)
            baud_rate: Baud rate to use from now on

        Returns:
            True if the link is open afterwards
        """
        with self._state_lock:
            if port:
                self.port = port
            if baud_rate:
                self.baud_rate = baud_rate

            if self._state == SerialLinkState.OPEN:
                logger.info(f"Serial port {self.port} is already open")
                return True

            self._set_state(SerialLinkState.CONNECTING)
            logger.info(f"Attempting to connect to {self.port} at {self.baud_rate} baud...")

            try:
                connection = self._serial_factory(
                    port=self.port,
                    baudrate=self.baud_rate,
                    timeout=self.read_timeout,
                )
            except (serial.SerialException, OSError, ValueError) as exc:
                self.last_error = str(exc)
                self._set_state(SerialLinkState.FAILED)
                logger.error(f"Failed to open serial port {self.port}: {exc}")
                self._log_open_hints(str(exc))
                return False

            self._connection = connection
            self.last_error = None
            self._set_state(SerialLinkState.OPEN)
            self._reader = threading.Thread(
                target=self._read_loop,
                args=(connection,),
                name=f"serial-reader-{self.port}",
                daemon=True,
            )
            self._reader.start()

        logger.info(f"Serial port {self.port} opened successfully")
        return True

    def close(self) -> None:
        """Close the port and stop the reader thread."""
        with self._write_lock:
            with self._state_lock:
                connection = self._connection
                reader = self._reader
                self._connection = None
                self._reader = None
                self._set_state(SerialLinkState.DISCONNECTED)

            if connection is not None:
                self._close_connection(connection)
                logger.info(f"Serial port {self.port} closed")

        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=self.read_timeout + 1.0)

    def retry(self) -> bool:
        """Manual recovery: close if open, pause, then open again."""
        logger.info(f"Manual serial retry requested for {self.port}")
        if self.is_open:
            self.close()
            if self.retry_delay > 0:
                time.sleep(self.retry_delay)
        return self.open()

    def send(self, command: FinalCommand) -> bool:
        """
        Write one command as a single JSON line.

        Returns False, without touching the port, when the link is not open.
        A write error drops the link to disconnected.
        """
        with self._write_lock:
            with self._state_lock:
                connection = self._connection if self._state == SerialLinkState.OPEN else None

            if connection is None:
                logger.error(f"Serial port {self.port} not available ({self._state.value})")
                return False

            line = encode_command(command)
            try:
                connection.write(line)
            except _IO_ERRORS as exc:
                logger.error(f"Error sending to device on {self.port}: {exc}")
                self._drop_connection(connection, str(exc))
                return False

        logger.info(f"Sent to device: {line.decode(ENCODING).strip()}")
        return True

    def status(self) -> SerialStatus:
        with self._state_lock:
            return SerialStatus(
                connected=self._state == SerialLinkState.OPEN,
                port=self.port,
                baud_rate=self.baud_rate,
                state=self._state,
                last_device_status=self.last_status,
            )

    def add_status_listener(self, listener: StatusListener) -> None:
        """Register a callable that receives every decoded status reply."""
        self.status_listeners.append(listener)

    def _is_current(self, connection: Any) -> bool:
        with self._state_lock:
            return self._connection is connection and self._state == SerialLinkState.OPEN

    def _drop_connection(self, connection: Any, reason: str) -> None:
        """Forget a connection that failed. Ignored if it was already replaced."""
        with self._state_lock:
            if self._connection is not connection:
                return
            self._connection = None
            self._reader = None
            self.last_error = reason
            self._set_state(SerialLinkState.DISCONNECTED)
        self._close_connection(connection)
        logger.warning(f"Serial link {self.port} disconnected; call retry() to reconnect")

    def _close_connection(self, connection: Any) -> None:
        try:
            connection.close()
        except _IO_ERRORS as exc:
            logger.debug(f"Ignoring error while closing {self.port}: {exc}")

    def _read_loop(self, connection: Any) -> None:
        """Read newline-delimited lines while this connection is current."""
        while self._is_current(connection):
            try:
                raw = connection.readline()
            except _READ_ERRORS as exc:
                if self._is_current(connection):
                    logger.error(f"Serial read error on {self.port}: {exc}")
                    self._drop_connection(connection, str(exc))
                break

            if not raw:
                continue

            line = raw.decode(ENCODING, errors="replace").strip()
            if line:
                self._handle_line(line)

        logger.debug(f"Serial reader for {self.port} stopped")

    def _handle_line(self, line: str) -> None:
        logger.info(f"Device: {line}")
        status = decode_status_line(line)
        if status is None:
            return

        self.last_status = status
        logger.debug(
            f"Device status: on={status.fan_on} speed={status.fan_speed} pwm={status.pwm_value}"
        )
        for listener in self.status_listeners:
            try:
                listener(status)
            except Exception:
                logger.exception(f"Status listener {listener!r} failed")

    def _log_open_hints(self, message: str) -> None:
        lowered = message.lower()
        if "access denied" in lowered or "permission" in lowered or "busy" in lowered:
            logger.warning(
                "Port access denied. Another program (e.g. a serial monitor) may be "
                "holding the port, or the user lacks permission to open it."
            )

        try:
            ports = list_available_ports()
        except Exception as exc:
            logger.error(f"Error listing serial ports: {exc}")
            return

        if not ports:
            logger.warning("No serial ports detected")
            return
        logger.info("Available serial ports:")
        for info in ports:
            logger.info(f"   {info['path']} - {info['manufacturer']}")
        logger.info(f"Set SERIAL_PORT to one of these (currently: {self.port})")
