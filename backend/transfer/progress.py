"""
Progress and throughput accounting for active transfers.

Percent is derived from byte counters on every update; throughput is only
re-sampled once the sampling window has elapsed, so bursts of updates
don't make the displayed rate jitter.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from pydantic import BaseModel

from config import PROGRESS_CLEANUP_DELAY, THROUGHPUT_WINDOW

logger = logging.getLogger(__name__)


def format_file_size(size: float) -> str:
    """Human readable size: 0 Bytes, 1.5 KB, 12.25 MB..."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    order = 0
    size = float(size)
    while size >= 1024 and order < len(units) - 1:
        order += 1
        size /= 1024
    return f"{round(size, 2):g} {units[order]}"


@dataclass
class ProgressRecord:
    start_time: float
    last_sample_time: float
    bytes_at_last_sample: int
    total_bytes: int
    bytes_transferred: int = 0
    percent: int = 0
    rate_bps: float | None = None
    complete: bool = False


class ProgressUpdate(BaseModel):
    """Snapshot sent to the UI."""
    transfer_id: str
    percent: int
    bytes_transferred: int
    total_bytes: int
    rate_bps: float | None
    rate_display: str
    complete: bool = False


def compute_percent(bytes_transferred: int, total_bytes: int) -> int:
    if total_bytes <= 0:
        return 0
    return max(0, min(100, bytes_transferred * 100 // total_bytes))


class ProgressTracker:
    """One ProgressRecord per transfer id."""

    def __init__(
        self,
        clock=time.monotonic,
        window: float = THROUGHPUT_WINDOW,
        cleanup_delay: float = PROGRESS_CLEANUP_DELAY,
    ) -> None:
        self._clock = clock
        self._window = window
        self._cleanup_delay = cleanup_delay
        self._records: dict[str, ProgressRecord] = {}
        self._cleanups: dict[str, asyncio.TimerHandle] = {}

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._records

    def get(self, transfer_id: str) -> ProgressRecord | None:
        return self._records.get(transfer_id)

    def snapshots(self) -> list[ProgressUpdate]:
        return [self._snapshot(tid, r) for tid, r in self._records.items()]

    def start(self, transfer_id: str, total_bytes: int) -> ProgressRecord:
        now = self._clock()
        record = ProgressRecord(
            start_time=now,
            last_sample_time=now,
            bytes_at_last_sample=0,
            total_bytes=total_bytes,
        )
        self._records[transfer_id] = record
        return record

    def restart_file(self, transfer_id: str, total_bytes: int) -> ProgressRecord:
        """Re-anchor a record at zero bytes for the next file of a transfer."""
        record = self._records.get(transfer_id)
        if record is None:
            return self.start(transfer_id, total_bytes)
        record.total_bytes = total_bytes
        record.bytes_transferred = 0
        record.bytes_at_last_sample = 0
        record.last_sample_time = self._clock()
        record.percent = 0
        return record

    def update(
        self, transfer_id: str, bytes_transferred: int, total_bytes: int
    ) -> ProgressUpdate | None:
        record = self._records.get(transfer_id)
        if record is None:
            return None

        record.total_bytes = total_bytes
        record.bytes_transferred = bytes_transferred
        record.percent = compute_percent(bytes_transferred, total_bytes)

        now = self._clock()
        elapsed = now - record.last_sample_time
        if elapsed > self._window:
            record.rate_bps = (bytes_transferred - record.bytes_at_last_sample) / elapsed
            record.last_sample_time = now
            record.bytes_at_last_sample = bytes_transferred

        return self._snapshot(transfer_id, record)

    def finish_file(self, transfer_id: str) -> ProgressUpdate | None:
        """Mark the current file as fully transferred."""
        record = self._records.get(transfer_id)
        if record is None:
            return None
        record.percent = 100
        return self._snapshot(transfer_id, record)

    def complete(self, transfer_id: str) -> ProgressUpdate | None:
        """Force 100% and drop the record after the cleanup delay."""
        record = self._records.get(transfer_id)
        if record is None:
            return None
        record.percent = 100
        record.complete = True
        logger.debug(f"Transfer {transfer_id} complete, progress kept for {self._cleanup_delay}s")

        loop = asyncio.get_running_loop()
        self._cleanups[transfer_id] = loop.call_later(
            self._cleanup_delay, self.remove, transfer_id
        )
        return self._snapshot(transfer_id, record)

    def remove(self, transfer_id: str) -> None:
        self._records.pop(transfer_id, None)
        handle = self._cleanups.pop(transfer_id, None)
        if handle is not None:
            handle.cancel()

    @staticmethod
    def _snapshot(transfer_id: str, record: ProgressRecord) -> ProgressUpdate:
        if record.complete:
            rate_display = "Complete"
        elif record.rate_bps is None:
            rate_display = "0 Bytes/s"
        else:
            rate_display = f"{format_file_size(record.rate_bps)}/s"
        return ProgressUpdate(
            transfer_id=transfer_id,
            percent=record.percent,
            bytes_transferred=record.bytes_transferred,
            total_bytes=record.total_bytes,
            rate_bps=record.rate_bps,
            rate_display=rate_display,
            complete=record.complete,
        )
