"""Structured operation log.

Each CLI command runs inside an :class:`OperationScope`. The scope collects
steps as the command progresses and, on exit, appends one JSON object to
``<logs_dir>/operations.jsonl``. Steps are mirrored to the stdlib logger so
``--verbose`` style debugging still works.

Failing to create the log directory or to write a record disables the logger
for the rest of the process; logging must never break a provisioning run.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

LOGGER = logging.getLogger("adstage")

_STEP_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "skipped": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


def _iso_now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class OperationScope:
    """Collects the steps and final result of a single command."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self._logger = logger
        self.op_id = secrets.token_hex(8)
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _iso_now()
        self._start = time.perf_counter()

    def __enter__(self) -> OperationScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self.result is None:
            if exc is not None and not _is_clean_exit(exc):
                self.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            else:
                self.success("Completed.")
        self._logger.write(self._to_record())

    # ------------------------------------------------------------------
    def add_step(self, name: str, *, status: str, detail: object | None = None) -> None:
        """Record an intermediate step (``info``, ``success``, ``warning``, ...)."""
        step: dict[str, object] = {"name": name, "status": status, "at": _iso_now()}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)
        LOGGER.log(
            _STEP_LEVELS.get(status, logging.DEBUG),
            "%s [%s] %s%s",
            self.command,
            status,
            name,
            f": {detail}" if detail is not None else "",
        )

    def info(self, name: str, detail: object | None = None) -> None:
        self.add_step(name, status="info", detail=detail)

    def warn(self, name: str, detail: object | None = None) -> None:
        self.add_step(name, status="warning", detail=detail)

    def fail(self, name: str, detail: object | None = None) -> None:
        self.add_step(name, status="error", detail=detail)

    # ------------------------------------------------------------------
    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Finalise the operation as successful."""
        self._finish("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Finalise the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
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
        """Finalise the operation as failed."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def _to_record(self) -> dict[str, object]:
        return {
            "id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self._started_at,
            "finished_at": _iso_now(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "steps": self.steps,
            "result": self.result,
        }


def _is_clean_exit(exc: BaseException) -> bool:
    # typer.Exit / SystemExit with code 0 are normal control flow.
    code = getattr(exc, "exit_code", getattr(exc, "code", None))
    return code in (0, None) and type(exc).__name__ in {"Exit", "SystemExit"}


class StructuredLogger:
    """Append-only JSON-lines log of CLI operations."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled; cannot create %s: %s", logs_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        return self._operations_log_path

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope for *command*; use it as a context manager."""
        return OperationScope(self, command, args=args, target=target)

    def write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError as exc:
            LOGGER.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
