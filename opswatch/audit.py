from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from threading import Lock

_LOGGER = logging.getLogger("opswatch.server")


@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    user: str
    method: str
    path: str
    client_address: str
    user_agent: str

    @classmethod
    def now(cls, *, user: str, method: str, path: str, client_address: str, user_agent: str) -> "AuditEntry":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            user=user,
            method=method,
            path=path,
            client_address=client_address,
            user_agent=user_agent,
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))


class AuditRecorder:
    """Appends one JSON line per request to the audit file.

    Writes run on a single worker thread so lines keep arrival order, and the
    caller waits at most ``timeout_sec`` for each one. A slow or failing sink
    is reported on the server log; it never fails the request.
    """

    def __init__(self, path: str | Path, *, timeout_sec: float = 1.0) -> None:
        self.path = Path(path)
        self._timeout_sec = max(0.001, float(timeout_sec))
        self._write_lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="opswatch-audit")

    def _write_line(self, line: str) -> None:
        with self._write_lock:
            parent = self.path.parent
            if str(parent):
                os.makedirs(parent, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")
                handle.flush()

    def append_sync(self, entry: AuditEntry) -> bool:
        try:
            self._write_line(entry.to_json())
        except OSError as exc:
            _LOGGER.warning("Audit append failed path=%s: %s", self.path, exc)
            return False
        return True

    async def append(self, entry: AuditEntry) -> bool:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self._write_line, entry.to_json())
        try:
            await asyncio.wait_for(future, timeout=self._timeout_sec)
        except asyncio.TimeoutError:
            _LOGGER.warning(
                "Audit append exceeded %.3fs path=%s method=%s route=%s",
                self._timeout_sec,
                self.path,
                entry.method,
                entry.path,
            )
            return False
        except OSError as exc:
            _LOGGER.warning("Audit append failed path=%s: %s", self.path, exc)
            return False
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=False)
