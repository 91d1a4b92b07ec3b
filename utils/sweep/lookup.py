"""
Manufacturer lookup by MAC/BSSID prefix (OUI).

The table is loaded once, from a JSON object mapping "XX:XX:XX" prefixes to
vendor names. Loading resolves a readiness event; lookups wait for it at
most for the caller's bounded timeout and report a miss otherwise.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Optional, Union

from .constants import LOOKUP_WAIT_SECONDS

logger = logging.getLogger('sweep.lookup')

_SEPARATORS = re.compile(r'[-.\s]')


def normalize_prefix(mac_or_bssid: str) -> str:
    """
    Normalize a MAC, BSSID or bare prefix to the "XX:XX:XX" table key.

    Dashes and dots become colons, whitespace is dropped and single-digit
    octets are zero-padded.
    """
    cleaned = _SEPARATORS.sub(':', mac_or_bssid.strip().upper())
    octets = [o for o in cleaned.split(':') if o][:3]
    return ':'.join(o.zfill(2) for o in octets)


class ManufacturerLookup:
    """
    Prefix-to-vendor table with an explicit readiness signal.

    A miss, a missing table or a timeout never raises; lookups just return
    None so detection is never blocked.
    """

    def __init__(
        self,
        entries: Optional[dict[str, str]] = None,
        wait_seconds: float = LOOKUP_WAIT_SECONDS,
    ):
        self.wait_seconds = wait_seconds
        self._db: dict[str, str] = {}
        self._lock = threading.Lock()
        self._ready = threading.Event()
        self._loader: Optional[threading.Thread] = None

        if entries is not None:
            self._set_entries(entries)

    @property
    def is_loaded(self) -> bool:
        with self._lock:
            return self._ready.is_set() and bool(self._db)

    @property
    def entry_count(self) -> int:
        with self._lock:
            return len(self._db)

    def load(self, path: Union[str, Path]) -> bool:
        """
        Load the table synchronously.

        Returns:
            True if the table was loaded. The readiness event is resolved
            either way so waiting callers stop waiting.
        """
        try:
            with open(path, encoding='utf-8') as f:
                parsed = json.load(f)
            if not isinstance(parsed, dict):
                raise ValueError('OUI table must be a JSON object')
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load OUI database from {path}: {e}")
            self._ready.set()
            return False

        self._set_entries(parsed)
        logger.info(f"Loaded {len(parsed)} OUI entries")
        return True

    def load_async(self, path: Union[str, Path]) -> threading.Thread:
        """Load the table on a background thread."""
        self._loader = threading.Thread(
            target=self.load, args=(path,), name='oui-loader', daemon=True
        )
        self._loader.start()
        return self._loader

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(self.wait_seconds if timeout is None else timeout)

    def lookup(self, mac_or_bssid: str, timeout: Optional[float] = None) -> Optional[str]:
        """
        Resolve the vendor for an address or prefix.

        Args:
            mac_or_bssid: Full address or prefix in any common notation.
            timeout: Longest wait for the table to load (defaults to
                ``wait_seconds``).

        Returns:
            Vendor name, or None on miss or timeout.
        """
        if not mac_or_bssid:
            return None
        if not self.wait_until_ready(timeout):
            logger.debug("OUI database not ready, treating lookup as miss")
            return None

        prefix = normalize_prefix(mac_or_bssid)
        with self._lock:
            return self._db.get(prefix)

    def _set_entries(self, entries: dict[str, str]) -> None:
        normalized = {normalize_prefix(k): v for k, v in entries.items()}
        with self._lock:
            self._db = normalized
        self._ready.set()
