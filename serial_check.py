#!/usr/bin/env python3
"""
Hardware smoke test for the serial link.

Opens the configured port, sends a short command sequence and logs the
status lines the device reports back.
"""
import logging
import sys
import time

from fan_server.config import settings
from fan_server.integration.serial_link import SerialLinkManager, list_available_ports
from fan_server.models import Action, FinalCommand

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

TEST_COMMANDS = [
    FinalCommand(action=Action.ON),
    FinalCommand(action=Action.SPEED, value=3),
    FinalCommand(action=Action.SPEED, value=5),
    FinalCommand(action=Action.OFF),
]


def main(pause: float = 2.0) -> int:
    ports = list_available_ports()
    print("\nAvailable serial ports:")
    for info in ports:
        print(f"   {info['path']} - {info['manufacturer']}")
    print()

    link = SerialLinkManager(port=settings.serial_port, baud_rate=settings.serial_baud_rate)
    link.add_status_listener(
        lambda status: print(f"   status: on={status.fan_on} speed={status.fan_speed} pwm={status.pwm_value}")
    )

    if not link.open():
        print(f"Could not open {settings.serial_port}: {link.last_error}")
        return 1

    # Boards reset when the port opens
    time.sleep(pause)

    try:
        for index, command in enumerate(TEST_COMMANDS, start=1):
            print(f"Sending command {index}: {command.action.value} {command.value or ''}".rstrip())
            if not link.send(command):
                print("Send failed, link dropped")
                return 1
            time.sleep(pause)
    finally:
        link.close()

    print("Test sequence complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
