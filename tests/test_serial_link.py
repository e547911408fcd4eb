"""
Unit tests for SerialLinkManager.

All tests run against FakeSerial (see conftest.py); no device needed.
"""
import threading

import pytest
import serial

from fan_server.integration.serial_link import SerialLinkManager, list_available_ports
from fan_server.models import Action, FinalCommand, SerialLinkState

FAN_OFF = FinalCommand(action=Action.OFF)
FAN_SPEED_3 = FinalCommand(action=Action.SPEED, value=3)


class TestInitialState:

    def test_starts_disconnected(self, link):
        assert link.state == SerialLinkState.DISCONNECTED
        assert link.is_open is False

    def test_status_snapshot(self, link):
        status = link.status()
        assert status.connected is False
        assert status.port == "/dev/ttyFAKE0"
        assert status.baud_rate == 115200
        assert status.state == SerialLinkState.DISCONNECTED
        assert status.last_device_status is None

    def test_send_before_open_does_no_io(self, link, serial_ports):
        assert link.send(FAN_OFF) is False
        assert serial_ports == []


class TestOpen:

    def test_open_success(self, link, serial_ports):
        assert link.open() is True
        assert link.state == SerialLinkState.OPEN
        assert len(serial_ports) == 1
        port = serial_ports[0]
        assert port.port == "/dev/ttyFAKE0"
        assert port.baudrate == 115200
        assert port.timeout == 0.05
        assert link.status().connected is True

    def test_open_with_explicit_port(self, link, serial_ports):
        assert link.open("/dev/ttyFAKE1", 115200) is True
        assert serial_ports[0].port == "/dev/ttyFAKE1"
        assert link.status().port == "/dev/ttyFAKE1"

    def test_open_twice_keeps_one_connection(self, link, serial_ports):
        link.open()
        assert link.open() is True
        assert len(serial_ports) == 1

    @pytest.mark.parametrize("error", [
        serial.SerialException("could not open port 'COM3': PermissionError(13, 'Access is denied.')"),
        FileNotFoundError(2, "No such file or directory"),
        ValueError("Not a valid port"),
    ])
    def test_open_failure_is_reported_not_raised(self, no_port_listing, error):
        def failing_factory(**kwargs):
            raise error

        manager = SerialLinkManager(port="COM3", serial_factory=failing_factory, retry_delay=0)
        assert manager.open() is False
        assert manager.state == SerialLinkState.FAILED
        assert manager.last_error
        assert manager.send(FAN_OFF) is False
        no_port_listing.assert_called_once()

    def test_retry_recovers_from_failure(self, serial_factory, serial_ports, no_port_listing):
        attempts = []

        def flaky_factory(**kwargs):
            attempts.append(kwargs)
            if len(attempts) == 1:
                raise serial.SerialException("device busy")
            return serial_factory(**kwargs)

        manager = SerialLinkManager(port="COM3", serial_factory=flaky_factory, retry_delay=0, read_timeout=0.05)
        try:
            assert manager.open() is False
            assert manager.state == SerialLinkState.FAILED
            assert manager.retry() is True
            assert manager.state == SerialLinkState.OPEN
            assert manager.last_error is None
            assert len(attempts) == 2
        finally:
            manager.close()


class TestSend:

    def test_writes_one_json_line(self, link, serial_ports):
        link.open()
        assert link.send(FAN_SPEED_3) is True
        assert bytes(serial_ports[0].buffer) == b'{"device":"fan","action":"speed","value":3}\n'

    def test_repeated_send_is_identical(self, link, serial_ports):
        link.open()
        assert link.send(FAN_OFF) is True
        assert link.send(FAN_OFF) is True
        assert serial_ports[0].lines == ['{"device":"fan","action":"off"}'] * 2
        assert link.state == SerialLinkState.OPEN

    def test_write_error_disconnects(self, link, serial_ports):
        link.open()
        serial_ports[0].fail_writes = True
        assert link.send(FAN_OFF) is False
        assert link.state == SerialLinkState.DISCONNECTED
        assert serial_ports[0].is_open is False
        assert "write failed" in link.last_error

    def test_no_automatic_reconnect_after_write_error(self, link, serial_ports):
        link.open()
        serial_ports[0].fail_writes = True
        link.send(FAN_OFF)
        assert link.send(FAN_OFF) is False
        assert len(serial_ports) == 1

    def test_concurrent_sends_do_not_interleave(self, link, serial_ports):
        link.open()
        commands = [FinalCommand(action=Action.SPEED, value=(i % 5) + 1) for i in range(40)]
        results = []

        def worker(command):
            results.append(link.send(command))

        threads = [threading.Thread(target=worker, args=(command,)) for command in commands]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert all(results)
        lines = serial_ports[0].lines
        assert len(lines) == len(commands)
        valid = {f'{{"device":"fan","action":"speed","value":{speed}}}' for speed in range(1, 6)}
        assert set(lines) <= valid


class TestCloseAndRetry:

    def test_close(self, link, serial_ports):
        link.open()
        link.close()
        assert link.state == SerialLinkState.DISCONNECTED
        assert serial_ports[0].is_open is False
        assert link.send(FAN_OFF) is False
        assert serial_ports[0].write_calls == 0

    def test_close_when_never_opened(self, link):
        link.close()
        assert link.state == SerialLinkState.DISCONNECTED

    def test_retry_while_open_reopens(self, link, serial_ports):
        link.open()
        assert link.retry() is True
        assert len(serial_ports) == 2
        assert serial_ports[0].is_open is False
        assert serial_ports[1].is_open is True
        assert link.send(FAN_OFF) is True
        assert serial_ports[1].lines == ['{"device":"fan","action":"off"}']
        assert serial_ports[0].write_calls == 0

    def test_retry_when_disconnected(self, link, serial_ports):
        assert link.retry() is True
        assert link.state == SerialLinkState.OPEN
        assert len(serial_ports) == 1


class TestInboundLines:

    def test_status_line_decoded(self, link, serial_ports, wait_until):
        link.open()
        serial_ports[0].feed('{"device":"esp32","fanOn":true,"fanSpeed":3,"pwmValue":127}')
        assert wait_until(lambda: link.last_status is not None)
        assert link.last_status.fan_speed == 3
        assert link.status().last_device_status.pwm_value == 127

    def test_listeners_receive_status(self, link, serial_ports, wait_until):
        received = []
        link.add_status_listener(received.append)
        link.open()
        serial_ports[0].feed('{"device":"esp32","fanOn":false,"fanSpeed":0,"pwmValue":0}')
        assert wait_until(lambda: len(received) == 1)
        assert received[0].fan_on is False

    def test_garbage_and_failing_listener_do_not_stop_reader(self, link, serial_ports, wait_until):
        received = []

        def broken_listener(status):
            raise RuntimeError("sink down")

        link.add_status_listener(broken_listener)
        link.add_status_listener(received.append)
        link.open()
        port = serial_ports[0]
        port.feed("ESP32 booting...")
        port.feed("{not json")
        port.feed('{"device":"esp32","fanOn":true,"fanSpeed":1,"pwmValue":51}')
        port.feed('{"device":"esp32","fanOn":true,"fanSpeed":5,"pwmValue":255}')
        assert wait_until(lambda: len(received) == 2)
        assert link.last_status.fan_speed == 5
        assert link.state == SerialLinkState.OPEN

    def test_status_never_triggers_writes(self, link, serial_ports, wait_until):
        link.open()
        serial_ports[0].feed('{"device":"esp32","fanOn":false,"fanSpeed":0,"pwmValue":0}')
        assert wait_until(lambda: link.last_status is not None)
        assert serial_ports[0].write_calls == 0

    def test_read_error_disconnects(self, link, serial_ports, wait_until):
        link.open()
        serial_ports[0].fail_next_read()
        assert wait_until(lambda: link.state == SerialLinkState.DISCONNECTED)
        assert serial_ports[0].is_open is False
        assert link.send(FAN_OFF) is False
        # Manual recovery only
        assert len(serial_ports) == 1
        assert link.retry() is True
        assert len(serial_ports) == 2


def test_list_available_ports(monkeypatch):
    class Info:
        device = "/dev/ttyUSB0"
        manufacturer = None
        description = "CP2102 USB to UART"

    monkeypatch.setattr("fan_server.integration.serial_link.list_ports.comports", lambda: [Info()])
    assert list_available_ports() == [
        {"path": "/dev/ttyUSB0", "manufacturer": "Unknown", "description": "CP2102 USB to UART"}
    ]
