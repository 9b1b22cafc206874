"""Durable persistence of one YAML record per instance name.

Records live at ``<instances_dir>/<name>/state.yml``. Every write replaces the
whole file through a temporary sibling and :func:`os.replace`, so a reader
sees either the previous record or the new one, never a truncated blend.

Writes are guarded by an optimistic fingerprint check: callers present the
fingerprint they loaded (``None`` when creating) and the store refuses to
overwrite a record whose bytes changed since. The compare-and-replace step
runs under a per-record advisory lock kept in ``<instances_dir>/.locks`` so
two writers can never both pass the check.
"""
from __future__ import annotations

import contextlib
import hashlib
import os
import tempfile
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import yaml

from ..errors import (
    ConfigurationError,
    ConflictError,
    FieldIssue,
    InstanceExistsError,
    NotFoundError,
    StateStoreError,
)
from ..locking import LockManager, LockTimeoutError
from .model import InstanceState, instance_name_problem
from .parser import StateParser

STATE_FILE_NAME = "state.yml"
LOCKS_DIR_NAME = ".locks"


def fingerprint_bytes(payload: bytes) -> str:
    """Return the fingerprint of a serialised record."""
    return hashlib.sha256(payload).hexdigest()


def serialise_state(state: InstanceState) -> bytes:
    """Return the YAML document written for *state*."""
    text = yaml.safe_dump(state.to_dict(), sort_keys=False, default_flow_style=False)
    return text.encode("utf-8")


@dataclass(frozen=True)
class LoadedState:
    """A validated record plus the fingerprint of the bytes it was read from."""

    state: InstanceState
    fingerprint: str


class StateStore:
    """Load, save and delete instance records below a root directory."""

    def __init__(
        self,
        root: Path,
        parser: StateParser,
        *,
        lock_timeout: float = 30.0,
    ) -> None:
        """Bind the store to *root*, validating every load through *parser*."""
        self.root = Path(root).expanduser()
        self.parser = parser
        self._locks = LockManager(self.root / LOCKS_DIR_NAME, default_timeout=lock_timeout)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the record path for instance *name*."""
        problem = instance_name_problem(name)
        if problem:
            raise ConfigurationError(
                f"Invalid instance name {name!r}.",
                issues=(FieldIssue("name", problem),),
            )
        return self.root / name / STATE_FILE_NAME

    def exists(self, name: str) -> bool:
        """Return ``True`` when a record is stored for *name*."""
        return self.path_for(name).is_file()

    def list_names(self) -> list[str]:
        """Return the names of every stored record, sorted."""
        if not self.root.is_dir():
            return []
        names = [
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir()
            and instance_name_problem(entry.name) is None
            and (entry / STATE_FILE_NAME).is_file()
        ]
        return sorted(names)

    def fingerprint(self, name: str) -> str | None:
        """Return the fingerprint currently on disk for *name* (``None`` if absent)."""
        payload = self._read_bytes(self.path_for(name))
        return None if payload is None else fingerprint_bytes(payload)

    # ------------------------------------------------------------------
    # Load / save / delete
    # ------------------------------------------------------------------
    def load(self, name: str) -> LoadedState:
        """Return the validated record for *name* or raise :class:`NotFoundError`."""
        path = self.path_for(name)
        payload = self._read_bytes(path)
        if payload is None:
            raise NotFoundError(name)
        try:
            raw = yaml.safe_load(payload.decode("utf-8"))
        except (yaml.YAMLError, UnicodeDecodeError) as exc:
            raise ConfigurationError(
                f"State file {path} is not a readable YAML document.",
                issues=(FieldIssue("<document>", str(exc)),),
                context={"name": name, "path": str(path)},
                cause=exc,
            ) from exc
        state = self.parser.parse(raw)
        if state.name != name:
            raise ConfigurationError(
                f"State file {path} belongs to instance '{state.name}'.",
                issues=(FieldIssue("name", f"expected '{name}'"),),
                context={"name": name, "path": str(path)},
            )
        return LoadedState(state=state, fingerprint=fingerprint_bytes(payload))

    def save(self, state: InstanceState, *, expected: str | None) -> str:
        """Persist *state*, returning the new fingerprint.

        ``expected`` is the fingerprint obtained at load time, or ``None`` to
        require that no record exists yet. A mismatch raises
        :class:`ConflictError` (:class:`InstanceExistsError` on create).
        """
        path = self.path_for(state.name)
        # Re-validate so an invalid record can never reach the disk.
        self.parser.parse(state.to_dict())
        payload = serialise_state(state)
        with self._guard(state.name):
            actual = self.fingerprint(state.name)
            if expected is None and actual is not None:
                raise InstanceExistsError(state.name, actual=actual)
            if expected is not None and actual != expected:
                raise ConflictError(state.name, expected=expected, actual=actual)
            try:
                self._write_atomic(path, payload)
            except OSError as exc:
                raise StateStoreError(
                    f"Failed to write state for instance '{state.name}': {exc}",
                    context={"name": state.name, "path": str(path)},
                    cause=exc,
                ) from exc
        return fingerprint_bytes(payload)

    def delete(self, name: str, *, expected: str | None) -> None:
        """Remove the record for *name* if it still matches *expected*."""
        path = self.path_for(name)
        with self._guard(name):
            actual = self.fingerprint(name)
            if actual is None:
                raise NotFoundError(name)
            if expected is not None and actual != expected:
                raise ConflictError(name, expected=expected, actual=actual)
            try:
                path.unlink()
            except OSError as exc:
                raise StateStoreError(
                    f"Failed to delete state for instance '{name}': {exc}",
                    context={"name": name, "path": str(path)},
                    cause=exc,
                ) from exc
            # Leave the directory behind when something else lives in it.
            with contextlib.suppress(OSError):
                path.parent.rmdir()
            self._locks.discard(name)

    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def _guard(self, name: str) -> Iterator[None]:
        try:
            with self._locks.instance_lock(name):
                yield
        except LockTimeoutError as exc:
            raise StateStoreError(
                f"Timed out waiting for the state lock of instance '{name}'.",
                context={"name": name, "lock": str(self._locks.lock_path(name))},
                cause=exc,
            ) from exc

    @staticmethod
    def _read_bytes(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateStoreError(
                f"Failed to read state file {path}: {exc}",
                context={"path": str(path)},
                cause=exc,
            ) from exc

    @staticmethod
    def _write_atomic(path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "LOCKS_DIR_NAME",
    "LoadedState",
    "STATE_FILE_NAME",
    "StateStore",
    "fingerprint_bytes",
    "serialise_state",
]
