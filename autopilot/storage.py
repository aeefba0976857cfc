"""Key-addressed JSON document store with advisory file locking.

Keys are path-like strings (``users/{user_id}/jobs/index.json``). Every
component persists through ``DocumentStore`` only; ``update`` is the
read-transform-write primitive. It is atomic per key for the local backend
(``fcntl`` lock + atomic replace) but callers still serialize work on the same
user through ``KeyedLocks``.
"""
from __future__ import annotations

import copy
import fcntl
import hashlib
import hmac
import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, quote, urlsplit

from autopilot.errors import InternalError, ValidationError
from autopilot.log import get_logger

log = get_logger(__name__)

Transform = Callable[[Any], Any]


class DocumentStore(ABC):
    def __init__(self, signing_key: str = "") -> None:
        self._signing_key = (signing_key or "autopilot-dev-signing-key").encode()

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the decoded document, or None when the key is absent."""

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        pass

    @abstractmethod
    def update(self, key: str, fn: Transform) -> Any:
        """Apply ``fn(current | None) -> next`` and write back. Returns ``next``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        pass

    @abstractmethod
    def list_keys(self, prefix: str) -> list[str]:
        pass

    @abstractmethod
    def put_bytes(self, key: str, data: bytes) -> None:
        pass

    @abstractmethod
    def get_bytes(self, key: str) -> bytes | None:
        pass

    @abstractmethod
    def _url_base(self, key: str) -> str:
        pass

    def presigned_url(self, key: str, ttl_seconds: int = 3600, *, now: float | None = None) -> str:
        """Expiring, HMAC-signed URL for a binary artifact."""
        _check_key(key)
        expires = int((now if now is not None else time.time()) + ttl_seconds)
        sig = self._sign(key, expires)
        return f"{self._url_base(key)}?key={quote(key)}&expires={expires}&signature={sig}"

    def verify_presigned_url(self, url: str, *, now: float | None = None) -> bool:
        query = parse_qs(urlsplit(url).query)
        try:
            key = query["key"][0]
            expires = int(query["expires"][0])
            sig = query["signature"][0]
        except (KeyError, IndexError, ValueError):
            return False
        if expires < (now if now is not None else time.time()):
            return False
        return hmac.compare_digest(sig, self._sign(key, expires))

    def _sign(self, key: str, expires: int) -> str:
        msg = f"{key}:{expires}".encode()
        return hmac.new(self._signing_key, msg, hashlib.sha256).hexdigest()


def _check_key(key: str) -> None:
    if not key or key.startswith("/") or ".." in key.split("/"):
        raise ValidationError(f"Invalid storage key: {key!r}")


def _encode(key: str, value: Any) -> str:
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError) as exc:
        raise InternalError(f"Cannot serialise document {key}: {exc}")


def _decode(key: str, text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        log.error("Corrupt JSON document %s: %s", key, exc)
        raise InternalError(f"Corrupt document {key}")


class LocalDocumentStore(DocumentStore):
    """JSON files under a data directory."""

    def __init__(self, root: str | Path, signing_key: str = "") -> None:
        super().__init__(signing_key)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        _check_key(key)
        return self.root / key

    def _lock_path(self, path: Path) -> Path:
        return path.with_name(path.name + ".lock")

    def _read(self, key: str, path: Path) -> Any | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise InternalError(f"Cannot read {key}: {exc}")
        return _decode(key, text)

    def _write(self, key: str, path: Path, payload: str | bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            with os.fdopen(fd, "wb") as f:
                f.write(payload.encode("utf-8") if isinstance(payload, str) else payload)
            os.replace(tmp, path)
        except OSError as exc:
            raise InternalError(f"Cannot write {key}: {exc}")

    def get(self, key: str) -> Any | None:
        return self._read(key, self._path(key))

    def put(self, key: str, value: Any) -> None:
        path = self._path(key)
        self._write(key, path, _encode(key, value))

    def update(self, key: str, fn: Transform) -> Any:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path(path), "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                current = self._read(key, path)
                new = fn(current)
                self._write(key, path, _encode(key, new))
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        return new

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise InternalError(f"Cannot delete {key}: {exc}")

    def list_keys(self, prefix: str) -> list[str]:
        base = self.root / prefix if prefix else self.root
        search_root = base if base.is_dir() else base.parent
        if not search_root.exists():
            return []
        keys = []
        for p in search_root.rglob("*"):
            if not p.is_file() or p.name.endswith(".lock") or p.name.startswith("."):
                continue
            key = p.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def put_bytes(self, key: str, data: bytes) -> None:
        self._write(key, self._path(key), data)

    def get_bytes(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise InternalError(f"Cannot read {key}: {exc}")

    def _url_base(self, key: str) -> str:
        return self._path(key).resolve().as_uri()


class MemoryDocumentStore(DocumentStore):
    """In-process store; documents are deep-copied on the way in and out."""

    def __init__(self, signing_key: str = "") -> None:
        super().__init__(signing_key)
        self._docs: dict[str, str] = {}
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.RLock()
        self.writes = 0

    def get(self, key: str) -> Any | None:
        _check_key(key)
        with self._lock:
            text = self._docs.get(key)
        return None if text is None else _decode(key, text)

    def put(self, key: str, value: Any) -> None:
        _check_key(key)
        text = _encode(key, value)
        with self._lock:
            self._docs[key] = text
            self.writes += 1

    def update(self, key: str, fn: Transform) -> Any:
        with self._lock:
            new = fn(self.get(key))
            self.put(key, new)
        return copy.deepcopy(new)

    def delete(self, key: str) -> None:
        with self._lock:
            self._docs.pop(key, None)
            self._blobs.pop(key, None)

    def list_keys(self, prefix: str) -> list[str]:
        with self._lock:
            keys = list(self._docs) + list(self._blobs)
        return sorted(k for k in keys if k.startswith(prefix))

    def put_bytes(self, key: str, data: bytes) -> None:
        _check_key(key)
        with self._lock:
            self._blobs[key] = bytes(data)

    def get_bytes(self, key: str) -> bytes | None:
        with self._lock:
            return self._blobs.get(key)

    def _url_base(self, key: str) -> str:
        return f"memory://{key}"


class KeyedLocks:
    """One re-entrant lock per key (user id, or user id + job id)."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def __call__(self, *parts: str) -> threading.RLock:
        key = "/".join(parts)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

def user_prefix(user_id: str) -> str:
    return f"users/{user_id}/"


def profile_key(user_id: str) -> str:
    return f"users/{user_id}/profile.json"


def settings_key(user_id: str) -> str:
    return f"users/{user_id}/settings.json"


def jobs_index_key(user_id: str) -> str:
    return f"users/{user_id}/jobs/index.json"


def job_key(user_id: str, job_id: str) -> str:
    return f"users/{user_id}/jobs/{job_id}.json"


def applications_index_key(user_id: str) -> str:
    return f"users/{user_id}/applications/index.json"


def application_key(user_id: str, application_id: str) -> str:
    return f"users/{user_id}/applications/{application_id}.json"


def screenshot_key(user_id: str, application_id: str, attempt: int) -> str:
    return f"users/{user_id}/applications/screenshots/{application_id}-{attempt}.png"


def notifications_key(user_id: str) -> str:
    return f"users/{user_id}/notifications/index.json"


def documents_index_key(user_id: str) -> str:
    return f"users/{user_id}/documents/index.json"


def interviews_index_key(user_id: str) -> str:
    return f"users/{user_id}/interviews/index.json"


def interview_key(user_id: str, interview_id: str) -> str:
    return f"users/{user_id}/interviews/{interview_id}.json"


def emails_index_key(user_id: str) -> str:
    return f"users/{user_id}/emails/index.json"


SCHEDULER_STATE_KEY = "system/scheduler.json"


def cache_key(namespace: str, name: str) -> str:
    digest = hashlib.sha256(name.encode()).hexdigest()[:16]
    return f"cache/{namespace}/{digest}.json"


def list_user_ids(store: DocumentStore) -> list[str]:
    ids = {k.split("/")[1] for k in store.list_keys("users/") if k.count("/") >= 2}
    return sorted(ids)


def interview_items(doc: Any) -> list[dict]:
    """Entries of an interviews index, stored either as a list or ``{"interviews": [...]}``."""
    if isinstance(doc, dict):
        return list(doc.get("interviews", []))
    return list(doc or [])
