#!/usr/bin/env python3
# SPDX-License-Identifier: MPL-2.0
"""
Example usage of the Rainforest EAGLE client and schedule resolver.

This script reads the current demand from a gateway on the local network
and shows which time-of-use phase is active and when it ends.
"""

import os
from datetime import datetime

from rainforest_recorder.day_types import HolidayCalendar
from rainforest_recorder.eagle import EagleAPIError, EagleClient
from rainforest_recorder.retry import RetryPolicy, TransientNetworkFault
from rainforest_recorder.schedule import DEFAULT_TABLE, resolve_window


def main():
    """Example usage of the EAGLE client."""

    # Gateway parameters (cloud ID and install code from the gateway label)
    HOST = 'eagle-0012ab.local'
    CLOUD_ID = '0012ab'
    INSTALL_CODE = os.environ.get('EAGLE_INSTALL_CODE', '')
    DEVICE_ID = '0x000781000081fd0b'

    with EagleClient(HOST, CLOUD_ID, INSTALL_CODE, DEVICE_ID,
                     retry_policy=RetryPolicy(max_attempts=2)) as client:
        try:
            print(f"Devices on {HOST}:\n")
            for device in client.list_devices():
                print(f"  {device.hardware_address} {device.model_id or ''} "
                      f"({device.connection_status or 'unknown'})")

            reading = client.fetch_reading()
            print(f"\nDemand: {reading.value} kW")
            print(f"Meter last seen: {datetime.fromtimestamp(reading.timestamp).astimezone()}")

        except (EagleAPIError, TransientNetworkFault) as e:
            print(f"Error talking to gateway: {e}")
            return 1

    now = datetime.now().astimezone()
    window = resolve_window(DEFAULT_TABLE, HolidayCalendar("US"), now)
    boundary = window.boundary.resolve(now.date())
    print(f"\nActive phase: {window.phase.value}")
    print(f"Switches to {window.next_phase.value} at {boundary:%a %H:%M}")

    return 0


if __name__ == "__main__":
    exit(main())
