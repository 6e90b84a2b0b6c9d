"""Bounded reads over the append-only artifacts written by the monitoring pipeline.

Every read loads the whole file and slices the tail in memory. Artifact size is
capped upstream by log rotation, so a full read stays cheap and never has to
reason about partially written trailing records from a seek-based tail.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import json
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

from .errors import ArtifactError, ArtifactTimeout, IOFailure, MalformedArtifact

T = TypeVar("T")


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise IOFailure(str(path), f"{exc.__class__.__name__}: {exc.strerror or exc}") from exc


def _non_empty_lines(text: str) -> list[str]:
    return [line for line in text.splitlines() if line.strip()]


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _loads(text: str) -> Any:
    return json.loads(text, parse_constant=_reject_constant)


def tail_lines(path: str | Path, max_lines: int) -> list[str]:
    """Return the last ``max_lines`` non-blank lines of ``path``, oldest first.

    A missing file is an empty artifact, not an error.
    """
    text = _read_text(Path(path))
    if text is None or max_lines <= 0:
        return []
    return _non_empty_lines(text)[-max_lines:]


def tail_records(path: str | Path, max_records: int) -> list[Any]:
    """Like :func:`tail_lines` but parses every kept line as one JSON value.

    Any unparsable line inside the kept window raises ``MalformedArtifact``.
    """
    path = Path(path)
    text = _read_text(path)
    if text is None or max_records <= 0:
        return []
    lines = _non_empty_lines(text)
    first = max(0, len(lines) - max_records)
    records: list[Any] = []
    for offset, line in enumerate(lines[first:]):
        try:
            records.append(_loads(line))
        except json.JSONDecodeError as exc:
            raise MalformedArtifact(str(path), first + offset + 1, exc.msg) from exc
        except ValueError as exc:
            raise MalformedArtifact(str(path), first + offset + 1, str(exc)) from exc
    return records


def read_document(path: str | Path) -> Any | None:
    path = Path(path)
    text = _read_text(path)
    if text is None or not text.strip():
        return None
    try:
        return _loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedArtifact(str(path), None, exc.msg) from exc
    except ValueError as exc:
        raise MalformedArtifact(str(path), None, str(exc)) from exc


@dataclass(frozen=True)
class ArtifactSpec:
    name: str
    path: Path
    default_limit: int


class ArtifactReader:
    """Runs artifact reads on a bounded worker pool with a per-read timeout."""

    def __init__(
        self,
        artifacts: Mapping[str, ArtifactSpec],
        *,
        timeout_sec: float = 5.0,
        max_workers: int = 4,
    ) -> None:
        self._artifacts = dict(artifacts)
        self._timeout_sec = float(timeout_sec)
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="opswatch-read")

    def spec(self, name: str) -> ArtifactSpec:
        return self._artifacts[name]

    def names(self) -> list[str]:
        return sorted(self._artifacts)

    async def _run(self, spec: ArtifactSpec, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, fn, *args)
        try:
            return await asyncio.wait_for(future, timeout=self._timeout_sec)
        except asyncio.TimeoutError as exc:
            error = ArtifactTimeout(str(spec.path), f"read exceeded {self._timeout_sec:.3f}s")
            error.artifact = spec.name
            raise error from exc
        except ArtifactError as exc:
            exc.artifact = spec.name
            raise

    def _limit(self, spec: ArtifactSpec, limit: int | None) -> int:
        return spec.default_limit if limit is None else limit

    async def lines(self, name: str, limit: int | None = None) -> list[str]:
        spec = self.spec(name)
        return await self._run(spec, tail_lines, spec.path, self._limit(spec, limit))

    async def records(self, name: str, limit: int | None = None) -> list[Any]:
        spec = self.spec(name)
        return await self._run(spec, tail_records, spec.path, self._limit(spec, limit))

    async def document(self, name: str) -> Any | None:
        spec = self.spec(name)
        return await self._run(spec, read_document, spec.path)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
