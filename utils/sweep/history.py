"""
Scan history persistence.

Accepted scan results are appended to a JSON file (ISO-8601 timestamps),
keeping only the newest records. Writes happen on a background thread fed
by a bounded queue so saving never blocks detection; failures are logged
and never propagated.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import tempfile
import threading
from pathlib import Path
from typing import Optional, Union

from .constants import DEFAULT_HISTORY_FILE, HISTORY_MAX_RECORDS, HISTORY_QUEUE_SIZE
from .models import ScanResult

logger = logging.getLogger('sweep.history')

_STOP = object()


class ScanHistoryManager:
    """JSON-file history of accepted scan results."""

    def __init__(
        self,
        path: Union[str, Path] = DEFAULT_HISTORY_FILE,
        max_records: int = HISTORY_MAX_RECORDS,
        queue_size: int = HISTORY_QUEUE_SIZE,
    ):
        self.path = Path(path)
        self.max_records = max_records
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self._file_lock = threading.Lock()
        self._stats = {
            'batches_saved': 0,
            'records_saved': 0,
            'batches_dropped': 0,
            'errors': 0,
        }

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stats(self) -> dict:
        return self._stats.copy()

    def start(self) -> None:
        if self.is_running:
            return
        self._thread = threading.Thread(
            target=self._run, name='scan-history-writer', daemon=True
        )
        self._thread.start()
        logger.info(f"Scan history writer started ({self.path})")

    def stop(self, timeout: float = 2.0) -> None:
        if not self.is_running:
            self._thread = None
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Scan history writer stopped")

    def save_results(self, results: list[ScanResult]) -> bool:
        """
        Queue results for saving (or save inline when the writer is not running).

        Returns:
            True if the batch was queued or written.
        """
        records = [r.to_dict() for r in results]
        if not records:
            return True

        if not self.is_running:
            return self._append(records)

        try:
            self._queue.put_nowait(records)
            return True
        except queue.Full:
            self._stats['batches_dropped'] += 1
            logger.warning("Scan history queue full, dropping batch")
            return False

    def flush(self, timeout: float = 2.0) -> bool:
        """
        Wait until every batch queued so far has been written.

        Returns:
            True if the writer caught up within ``timeout`` (always True
            when the writer is not running).
        """
        if not self.is_running:
            return True
        done = threading.Event()
        try:
            self._queue.put(done, timeout=timeout)
        except queue.Full:
            return False
        return done.wait(timeout)

    def load_history(self) -> list[ScanResult]:
        """Load saved results; a missing or unreadable file yields an empty list."""
        with self._file_lock:
            records = self._read_records()
        results = []
        for record in records:
            try:
                results.append(ScanResult.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed history record: {e}")
        return results

    def clear_history(self) -> bool:
        with self._file_lock:
            try:
                if self.path.exists():
                    self.path.unlink()
                    logger.info("Cleared scan history")
                return True
            except OSError as e:
                self._stats['errors'] += 1
                logger.error(f"Error clearing scan history: {e}")
                return False

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            if isinstance(item, threading.Event):
                item.set()
                continue
            self._append(item)

    def _append(self, records: list[dict]) -> bool:
        with self._file_lock:
            try:
                history = self._read_records()
                history.extend(records)
                if len(history) > self.max_records:
                    history = history[-self.max_records:]
                self._write_records(history)
            except (OSError, TypeError, ValueError) as e:
                self._stats['errors'] += 1
                logger.error(f"Error saving scan history: {e}")
                return False

        self._stats['batches_saved'] += 1
        self._stats['records_saved'] += len(records)
        logger.debug(f"Saved {len(records)} scan results")
        return True

    def _read_records(self) -> list[dict]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self._stats['errors'] += 1
            logger.error(f"Error loading scan history: {e}")
            return []
        return data if isinstance(data, list) else []

    def _write_records(self, records: list[dict]) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.scan_history', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(records, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
