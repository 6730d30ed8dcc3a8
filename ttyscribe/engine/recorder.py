"""Raw terminal stream recording for offline extractor debugging.

Writes one newline-delimited JSON file per attached instance:

    <recording_dir>/<session_id>/<timestamp>-<instance_id>.ndjson

Entry types: ``meta`` (first line), ``chunk`` (raw output), ``snapshot``
(reconciled screen text, gzip+base64), ``info`` and ``warning``. Once the
file would exceed ``max_bytes`` a ``max-bytes-reached`` warning is written
and the recorder stops.
"""
from __future__ import annotations

import base64
import gzip
import json
import logging
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from ttyscribe.engine.models import TriggerKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
SNAPSHOT_ENCODING = "base64/gzip"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def recording_path(base_dir: str | Path, session_id: str, instance_id: str) -> Path:
    stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
    return Path(base_dir) / session_id / f"{stamp}-{instance_id}.ndjson"


class StreamRecorder:
    """Appends stream entries for one instance until closed or full."""

    def __init__(
        self,
        path: str | Path,
        *,
        session_id: str,
        instance_id: str,
        max_bytes: int = DEFAULT_MAX_BYTES,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.path = Path(path)
        self.max_bytes = max_bytes
        self.bytes_written = 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._stream: IO[str] | None = self.path.open("a", encoding="utf-8")
        self._write_entry({
            "type": "meta",
            "timestamp": _timestamp(),
            "sessionId": session_id,
            "instanceId": instance_id,
            **(metadata or {}),
        })
        logger.debug("Recording instance %s to %s", instance_id, self.path)

    @classmethod
    def create(
        cls,
        base_dir: str | Path,
        session_id: str,
        instance_id: str,
        **kwargs: Any,
    ) -> StreamRecorder:
        return cls(
            recording_path(base_dir, session_id, instance_id),
            session_id=session_id,
            instance_id=instance_id,
            **kwargs,
        )

    @property
    def closed(self) -> bool:
        return self._stream is None

    def write_chunk(self, chunk: str) -> None:
        self._write_entry({"type": "chunk", "timestamp": _timestamp(), "data": chunk})

    def write_snapshot(self, trigger: TriggerKind | str, snapshot: str) -> None:
        raw = snapshot.encode("utf-8")
        compressed = gzip.compress(raw)
        self._write_entry({
            "type": "snapshot",
            "timestamp": _timestamp(),
            "trigger": TriggerKind(trigger).value,
            "encoding": SNAPSHOT_ENCODING,
            "originalBytes": len(raw),
            "compressedBytes": len(compressed),
            "payload": base64.b64encode(compressed).decode("ascii"),
        })

    def close(self) -> None:
        if self._stream is None:
            return
        self._write_entry({
            "type": "info",
            "timestamp": _timestamp(),
            "message": "recorder:closed",
        })
        self._close_stream()

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()

    def _write_entry(self, entry: dict[str, Any]) -> None:
        if self._stream is None:
            return
        line = json.dumps(entry, ensure_ascii=False) + "\n"
        size = len(line.encode("utf-8"))
        if self.bytes_written + size > self.max_bytes:
            self._stream.write(json.dumps({
                "type": "warning",
                "timestamp": _timestamp(),
                "message": "max-bytes-reached",
                "bytesWritten": self.bytes_written,
                "limit": self.max_bytes,
            }) + "\n")
            logger.warning(
                "Recording %s reached %d bytes, stopping", self.path, self.max_bytes,
            )
            self._close_stream()
            return
        self._stream.write(line)
        self._stream.flush()
        self.bytes_written += size


def read_recording(path: str | Path) -> Iterator[dict[str, Any]]:
    """Yield entries from a recording; snapshot payloads come back as ``text``."""
    with Path(path).open(encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed entry at %s:%d", path, line_no)
                continue
            if entry.get("type") == "snapshot" and entry.get("encoding") == SNAPSHOT_ENCODING:
                entry["text"] = gzip.decompress(
                    base64.b64decode(entry["payload"])
                ).decode("utf-8")
            yield entry
