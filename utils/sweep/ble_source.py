"""
BLE advertisement source.

Runs a bleak BleakScanner and forwards every advertisement to the
BluetoothDetector as (address, rssi, local name, manufacturer). Scanning
either runs for a fixed duration or continuously on a background thread
with its own event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime
from typing import Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from .detectors import BluetoothDetector

logger = logging.getLogger('sweep.ble_source')

# Manufacturer company IDs (Bluetooth SIG assigned)
COMPANY_IDS = {
    0x004C: 'Apple',
    0x02E5: 'Espressif',
    0x0059: 'Nordic Semiconductor',
    0x000D: 'Texas Instruments',
    0x0075: 'Samsung',
    0x00E0: 'Google',
    0x0006: 'Microsoft',
    0x01DA: 'Tile',
}


def company_name(company_id: int) -> str:
    return COMPANY_IDS.get(company_id, f'Unknown ({hex(company_id)})')


class BLEAdvertisementSource:
    """Feeds bleak advertisements into a BluetoothDetector."""

    def __init__(self, detector: BluetoothDetector):
        self.detector = detector
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = threading.Event()
        self._advertisement_count = 0

    @property
    def is_scanning(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def advertisement_count(self) -> int:
        return self._advertisement_count

    def handle_advertisement(self, device: BLEDevice, adv_data: AdvertisementData) -> None:
        """bleak detection callback."""
        manufacturer = None
        if adv_data.manufacturer_data:
            company_id = next(iter(adv_data.manufacturer_data))
            manufacturer = company_name(company_id)

        self._advertisement_count += 1
        self.detector.process_advertisement(
            device.address.upper(),
            adv_data.rssi,
            name=adv_data.local_name or device.name,
            timestamp=datetime.now(),
            manufacturer=manufacturer,
        )

    async def scan_async(self, duration: float = 10.0) -> int:
        """
        Scan for a fixed duration.

        Returns:
            Number of advertisements forwarded during the scan.
        """
        start_count = self._advertisement_count
        logger.info(f"Starting BLE scan with bleak (duration={duration}s)")

        scanner = BleakScanner(detection_callback=self.handle_advertisement)
        await scanner.start()
        try:
            await asyncio.sleep(duration)
        finally:
            await scanner.stop()

        forwarded = self._advertisement_count - start_count
        logger.info(f"BLE scan complete: {forwarded} advertisements")
        return forwarded

    def scan(self, duration: float = 10.0) -> int:
        """Synchronous wrapper around scan_async()."""
        try:
            return asyncio.run(self.scan_async(duration))
        except Exception as e:
            logger.error(f"Bleak scan failed: {e}")
            return 0

    def start(self) -> bool:
        """Start continuous scanning on a background thread."""
        if self.is_scanning:
            return True
        self._stop_requested.clear()
        self._thread = threading.Thread(target=self._run, name='ble-source', daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_requested.set()
        loop, stop_event = self._loop, self._stop_event
        if loop is not None and stop_event is not None:
            loop.call_soon_threadsafe(stop_event.set)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        try:
            asyncio.run(self._scan_until_stopped())
        except Exception as e:
            logger.error(f"Continuous BLE scan failed: {e}")
        finally:
            self._loop = None
            self._stop_event = None

    async def _scan_until_stopped(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        # stop() may have run before the loop existed
        if self._stop_requested.is_set():
            return

        scanner = BleakScanner(detection_callback=self.handle_advertisement)
        await scanner.start()
        logger.info("Continuous BLE scan started")
        try:
            await self._stop_event.wait()
        finally:
            await scanner.stop()
            logger.info("Continuous BLE scan stopped")
