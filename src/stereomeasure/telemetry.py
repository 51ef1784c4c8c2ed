from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256


@dataclass(frozen=True)
class TelemetryRecord:
    """One accepted orientation sample, grouped by capture session."""

    timestamp_ms: int
    session_id: str
    pitch: float
    roll: float
    azimuth: float
    luminosity: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def telemetry_record_from_dict(d: dict[str, Any]) -> TelemetryRecord:
    return TelemetryRecord(
        timestamp_ms=int(d["timestamp_ms"]),
        session_id=str(d["session_id"]),
        pitch=float(d["pitch"]),
        roll=float(d["roll"]),
        azimuth=float(d["azimuth"]),
        luminosity=float(d.get("luminosity", 0.0)),
    )


def new_session_id() -> str:
    return str(uuid.uuid4())


class TelemetryStore(Protocol):
    """Append-only log of telemetry records keyed by session id."""

    def append(self, record: TelemetryRecord) -> None: ...

    def records(self, session_id: str) -> list[TelemetryRecord]: ...

    def clear(self) -> None: ...


class MemoryTelemetryStore:
    def __init__(self) -> None:
        self._records: list[TelemetryRecord] = []
        self._lock = threading.Lock()

    def append(self, record: TelemetryRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self, session_id: str) -> list[TelemetryRecord]:
        """Records of one session, newest first."""
        with self._lock:
            out = [r for r in self._records if r.session_id == session_id]
        return sorted(out, key=lambda r: r.timestamp_ms, reverse=True)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonlTelemetryStore:
    """
    Telemetry persisted as JSON Lines, one record per line, append-only.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, record: TelemetryRecord) -> None:
        line = json.dumps(record.to_dict(), sort_keys=True)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def records(self, session_id: str) -> list[TelemetryRecord]:
        if not self.path.exists():
            return []
        out: list[TelemetryRecord] = []
        with self._lock:
            text = self.path.read_text(encoding="utf-8")
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                rec = telemetry_record_from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError):
                logger.warning("%s:%d: skipping malformed telemetry line", self.path, lineno)
                continue
            if rec.session_id == session_id:
                out.append(rec)
        return sorted(out, key=lambda r: r.timestamp_ms, reverse=True)

    def clear(self) -> None:
        with self._lock:
            if self.path.exists():
                self.path.write_text("", encoding="utf-8")


_STOP = object()


class TelemetryWriter:
    """
    Bounded, non-blocking hand-off from the orientation path to a TelemetryStore.

    submit() never waits: when the queue is full the record is dropped and counted.
    A single daemon thread drains the queue; store failures are logged and the
    worker keeps going.
    """

    def __init__(self, store: TelemetryStore, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.store = store
        self._queue: queue.Queue = queue.Queue(maxsize=int(maxsize))
        self._dropped = 0
        self._written = 0
        self._count_lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="stereomeasure-telemetry", daemon=True)
        self._thread.start()

    @property
    def dropped(self) -> int:
        with self._count_lock:
            return self._dropped

    @property
    def written(self) -> int:
        with self._count_lock:
            return self._written

    def submit(self, record: TelemetryRecord) -> bool:
        if self._closed:
            logger.warning("telemetry writer closed; dropping record for session %s", record.session_id)
            with self._count_lock:
                self._dropped += 1
            return False
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            with self._count_lock:
                self._dropped += 1
                dropped = self._dropped
            logger.warning("telemetry queue full; dropped record (%d dropped so far)", dropped)
            return False
        return True

    __call__ = submit

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                try:
                    self.store.append(item)
                except Exception:
                    logger.exception("telemetry store append failed")
                else:
                    with self._count_lock:
                        self._written += 1
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every record submitted so far has been handed to the store."""
        self._queue.join()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # The stop marker may wait for room; close() is not on the sample path.
        self._queue.put(_STOP)
        self._thread.join()

    def __enter__(self) -> "TelemetryWriter":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
