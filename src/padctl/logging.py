"""Structured operation logging for padctl.

Each lifecycle command is wrapped in :meth:`StructuredLogger.operation`, which
collects the steps taken (``state.load``, ``provisioner.create``,
``state.save``...) and the final result, then appends one JSON object to
``operations.jsonl`` in the logs directory. A short summary is also emitted
through the standard :mod:`logging` tree under ``padctl.operations``.

The logger never raises because the log directory is missing or unwritable;
it disables itself instead so the command outcome is unaffected.
"""
from __future__ import annotations

import json
import logging as std_logging
import re
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"
REDACTED = "<redacted>"
_SECRET_KEY_RE = re.compile(r"password|token|secret|key", re.IGNORECASE)

_LOG = std_logging.getLogger("padctl.operations")


def redact_secrets(value: object) -> object:
    """Return *value* with string values under secret-looking keys redacted."""
    if isinstance(value, Mapping):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            text_key = str(key)
            if isinstance(item, str) and _SECRET_KEY_RE.search(text_key):
                redacted[text_key] = REDACTED
            else:
                redacted[text_key] = redact_secrets(item)
        return redacted
    if isinstance(value, (list, tuple)):
        return [redact_secrets(item) for item in value]
    return value


def _sanitise(value: object) -> object:
    """Coerce *value* into JSON-safe primitives."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Collects steps and the outcome of a single operation."""

    command: str
    args: dict[str, object]
    target: dict[str, object]
    op_id: str = field(default_factory=lambda: secrets.token_hex(6))
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    lock_wait_ms: int | None = None

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
    ) -> None:
        """Record a step taken while executing the operation."""
        step: dict[str, object] = {
            "name": name,
            "status": status,
            "at": datetime.now(UTC).isoformat(),
        }
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] = (),
        backups: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=(),
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        backups: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings or (message,),
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=0,
            warnings=(),
            errors=list(errors) if errors else [message],
            backups=(),
            context=context,
        )
        if rc is not None and self.result is not None:
            self.result["rc"] = rc

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str],
        errors: Sequence[str],
        backups: Sequence[str],
        context: Mapping[str, object] | None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "backups": list(backups),
        }
        if context:
            self.result["context"] = _sanitise(redact_secrets(context))


class StructuredLogger:
    """Append JSON operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling logging when it is unusable."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _LOG.warning("Operation log disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSON lines operation log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Wrap a command, writing its record when the block exits."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        started_at = datetime.now(UTC)
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, context={"type": type(exc).__name__})
            raise
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(scope, started_at, duration_ms)

    # ------------------------------------------------------------------
    def _write(self, scope: OperationScope, started_at: datetime, duration_ms: int) -> None:
        result = scope.result or {"status": "unknown", "message": "no result recorded"}
        _LOG.info(
            "%s [%s] %s: %s",
            scope.command,
            scope.op_id,
            result.get("status"),
            result.get("message"),
        )
        if not self._enabled:
            return
        record = {
            "op_id": scope.op_id,
            "timestamp": started_at.isoformat(),
            "command": scope.command,
            "args": _sanitise(redact_secrets(scope.args)),
            "target": _sanitise(scope.target),
            "duration_ms": duration_ms,
            "lock_wait_ms": scope.lock_wait_ms,
            "steps": scope.steps,
            "result": result,
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError as exc:
            _LOG.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "redact_secrets"]
