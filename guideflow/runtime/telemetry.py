"""
telemetry.py - Consumers for the runner's telemetry stream.

TelemetryRecorder keeps records in memory (diagnostics screens, tests).
JsonlTelemetrySink appends each record as one JSON line, for shipping to an
analytics pipeline. Both are plain callables and attach with
``runner.telemetry.subscribe(sink)``.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional, Union

from .events import TelemetryRecord, TelemetryType

logger = logging.getLogger(__name__)


class TelemetryRecorder:
    """Keeps the most recent telemetry records.

    Args:
        max_records: Oldest records are dropped beyond this; None keeps all.
    """

    def __init__(self, max_records: Optional[int] = None):
        self._records: Deque[TelemetryRecord] = deque(maxlen=max_records)

    def __call__(self, record: TelemetryRecord) -> None:
        self._records.append(record)

    @property
    def records(self) -> List[TelemetryRecord]:
        return list(self._records)

    def of_type(self, record_type: TelemetryType) -> List[TelemetryRecord]:
        return [r for r in self._records if r.type == record_type]

    def types(self) -> List[TelemetryType]:
        return [r.type for r in self._records]

    def last(self, record_type: Optional[TelemetryType] = None) -> Optional[TelemetryRecord]:
        for record in reversed(self._records):
            if record_type is None or record.type == record_type:
                return record
        return None

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class JsonlTelemetrySink:
    """Appends telemetry records to a JSONL file.

    Writes are serialized with a lock. Write failures are logged and dropped:
    telemetry must never break a workflow.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def __call__(self, record: TelemetryRecord) -> None:
        self.write(record)

    def write(self, record: TelemetryRecord) -> bool:
        line = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
            except OSError as e:
                logger.warning("Failed to append telemetry to %s: %s", self.path, e)
                return False
        return True


def read_telemetry(path: Union[str, Path]) -> List[TelemetryRecord]:
    """Read records written by JsonlTelemetrySink; malformed lines are skipped."""
    path = Path(path)
    if not path.exists():
        return []
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(TelemetryRecord.from_dict(json.loads(line)))
            except (ValueError, KeyError) as e:
                logger.warning("Skipping malformed telemetry line %d in %s: %s", line_number, path, e)
    return records


__all__ = ["JsonlTelemetrySink", "TelemetryRecorder", "read_telemetry"]
