"""
Pytest configuration and shared fixtures for fan server tests.
"""
import queue
import threading
import time
from typing import AsyncGenerator, Callable, List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
import serial
from httpx import AsyncClient, ASGITransport


class FakeSerial:
    """
    In-memory stand-in for serial.Serial.

    Writes land in `buffer` in two halves so unsynchronized writers would
    interleave. Inbound lines are queued with feed(); queue an exception
    with fail_next_read() to simulate the device going away.
    """

    def __init__(self, port=None, baudrate=9600, timeout=None, **kwargs):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.is_open = True
        self.fail_writes = False
        self.buffer = bytearray()
        self.write_calls = 0
        self._inbound: "queue.Queue" = queue.Queue()

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise serial.PortNotOpenError()
        if self.fail_writes:
            raise serial.SerialException("write failed")
        self.write_calls += 1
        half = len(data) // 2
        self.buffer.extend(data[:half])
        time.sleep(0.001)
        self.buffer.extend(data[half:])
        return len(data)

    def readline(self) -> bytes:
        try:
            item = self._inbound.get(timeout=0.01)
        except queue.Empty:
            return b""
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.is_open = False

    # Test helpers

    def feed(self, line: str) -> None:
        self._inbound.put(line.encode("utf-8") + b"\n")

    def fail_next_read(self, exc: Exception = None) -> None:
        self._inbound.put(exc or serial.SerialException("device reports readiness to read but returned no data"))

    @property
    def lines(self) -> List[str]:
        return [line for line in self.buffer.decode("utf-8").split("\n") if line]


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll until predicate() is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def serial_ports() -> List[FakeSerial]:
    """Every FakeSerial created by serial_factory, in creation order."""
    return []


@pytest.fixture
def serial_factory(serial_ports):
    """Factory with the serial.Serial signature that records created ports."""
    lock = threading.Lock()

    def factory(**kwargs) -> FakeSerial:
        port = FakeSerial(**kwargs)
        with lock:
            serial_ports.append(port)
        return port

    return factory


@pytest.fixture
def no_port_listing():
    """Keep failure hints from touching the real OS port list."""
    with patch("fan_server.integration.serial_link.list_ports.comports", return_value=[]) as comports:
        yield comports


@pytest.fixture
def link(serial_factory, no_port_listing):
    """A SerialLinkManager wired to FakeSerial, closed after the test."""
    from fan_server.integration.serial_link import SerialLinkManager

    manager = SerialLinkManager(
        port="/dev/ttyFAKE0",
        read_timeout=0.05,
        retry_delay=0,
        serial_factory=serial_factory,
    )
    yield manager
    manager.close()


@pytest.fixture
def mock_llm():
    """Create a mock OllamaLLM."""
    mock = MagicMock()
    mock.ainvoke = AsyncMock(return_value="fan off")
    return mock


@pytest.fixture
def classifier(mock_llm):
    """ConstrainedClassifier with a mocked LLM and the built-in prompt."""
    from fan_server.classifier.classifier import ConstrainedClassifier

    with patch("fan_server.classifier.classifier.OllamaLLM", return_value=mock_llm):
        instance = ConstrainedClassifier(
            model="qwen2.5:3b",
            prompt_path="does/not/exist.txt",
            timeout=2.0,
        )
    return instance


@pytest_asyncio.fixture
async def test_app():
    """Provide a test FastAPI app instance."""
    # Import here so logging/settings side effects happen lazily
    from fan_server.main import app
    return app


@pytest_asyncio.fixture
async def test_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing FastAPI endpoints."""
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test"
    ) as client:
        yield client


@pytest.fixture
def wait_until():
    """Poll helper for assertions on the serial reader thread."""
    return wait_for
