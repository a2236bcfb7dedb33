from __future__ import annotations

import json
import sys
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

LEVELS: dict[str, int] = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}
_LEVEL_ALIASES = {"WARNING": "WARN"}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _truncate(text: str, *, limit: int) -> str:
    s = str(text or "")
    if limit <= 0:
        return ""
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


def normalize_level(level: str | None) -> str:
    lvl = (level or "").strip().upper() or "INFO"
    lvl = _LEVEL_ALIASES.get(lvl, lvl)
    if lvl not in LEVELS:
        raise ValueError(f"Unknown log level: {level!r}")
    return lvl


class RunLogger:
    """
    Thread-safe JSONL logger shared by the poller and the outbox workers.

    Each log line is a single JSON object. Output goes to a file when a path is
    given, otherwise to a stream (stdout by default). Records below `min_level`
    are dropped.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        stream: TextIO | None = None,
        overwrite: bool = False,
        min_level: str = "INFO",
        session_id: str | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._stream = stream
        self._overwrite = bool(overwrite)
        self._min_level = LEVELS[normalize_level(min_level)]
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._fp: TextIO | None = None
        self._owns_fp = False
        self._lock = Lock()
        self._opened = False

    @classmethod
    def open(
        cls,
        path: str | Path | None = None,
        *,
        stream: TextIO | None = None,
        overwrite: bool = False,
        min_level: str = "INFO",
        session_id: str | None = None,
    ) -> "RunLogger":
        logger = cls(
            path,
            stream=stream,
            overwrite=overwrite,
            min_level=min_level,
            session_id=session_id,
        )
        logger._ensure_open()
        return logger

    @property
    def session_id(self) -> str:
        return self._session_id

    def close(self) -> None:
        with self._lock:
            if self._fp is not None:
                try:
                    self._fp.flush()
                finally:
                    if self._owns_fp:
                        self._fp.close()
                self._fp = None

    def __enter__(self) -> "RunLogger":
        self._ensure_open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def enabled(self, level: str) -> bool:
        return LEVELS.get(normalize_level(level), 0) >= self._min_level

    def debug(self, event: str, **data: Any) -> None:
        self.log("DEBUG", event, **data)

    def info(self, event: str, **data: Any) -> None:
        self.log("INFO", event, **data)

    def warning(self, event: str, **data: Any) -> None:
        self.log("WARN", event, **data)

    def error(self, event: str, **data: Any) -> None:
        self.log("ERROR", event, **data)

    def exception(self, event: str, *, exc: BaseException, **data: Any) -> None:
        err = {
            "type": type(exc).__name__,
            "message": _truncate(str(exc), limit=2000),
            "traceback": _truncate(
                "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                limit=12000,
            ),
        }
        self.log("ERROR", event, error=err, **data)

    def log(self, level: str, event: str, **data: Any) -> None:
        lvl = normalize_level(level)
        if LEVELS[lvl] < self._min_level:
            return

        record: dict[str, Any] = {
            "ts": _utc_now_iso(),
            "level": lvl,
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }
        if data:
            record["data"] = data

        self._write(record)

    def _ensure_open(self) -> None:
        if self._fp is not None:
            return

        with self._lock:
            if self._fp is not None:
                return

            if self._path is None:
                self._fp = self._stream or sys.stdout
                self._owns_fp = False
                return

            self._path.parent.mkdir(parents=True, exist_ok=True)
            mode = "w" if self._overwrite and not self._opened else "a"
            self._fp = self._path.open(mode, encoding="utf-8", newline="\n")
            self._owns_fp = True
            self._opened = True

    def _write(self, record: dict[str, Any]) -> None:
        self._ensure_open()

        payload = json.dumps(
            record,
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )

        with self._lock:
            if self._fp is None:
                return
            self._fp.write(payload + "\n")
            self._fp.flush()
