"""Server-side session storage keyed by a signed ``sid`` cookie."""
from __future__ import annotations

import base64
import json
import logging
import os
import pathlib
import re
import tempfile
import time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from log_helpers import debug_event, token_preview

logger = logging.getLogger("workdrive_bridge.sessions")

SESSION_TTL = 60 * 60 * 24
SID_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


def _mac(sid: str, secret: str) -> hmac.HMAC:
    h = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    h.update(sid.encode("utf-8"))
    return h


def sign_sid(sid: str, secret: str) -> str:
    sig = base64.urlsafe_b64encode(_mac(sid, secret).finalize()).rstrip(b"=").decode("ascii")
    return f"{sid}.{sig}"


def unsign_sid(value: str | None, secret: str) -> str | None:
    """Return the session id if the cookie signature checks out, else None."""
    if not value or "." not in value:
        return None
    sid, sig = value.rsplit(".", 1)
    if not SID_RE.match(sid):
        return None
    try:
        raw = base64.urlsafe_b64decode(sig + "=" * (-len(sig) % 4))
        _mac(sid, secret).verify(raw)
    except (InvalidSignature, ValueError):
        debug_event(logger, "sid_bad_signature", sid=token_preview(sid))
        return None
    return sid


class FileSessionStore:
    """One JSON file per session under ``path``."""

    def __init__(self, path, ttl: int = SESSION_TTL, clock=time.time) -> None:
        self.path = pathlib.Path(path)
        self.path.mkdir(parents=True, exist_ok=True)
        self.ttl = ttl
        self.clock = clock

    def _file(self, sid: str) -> pathlib.Path:
        if not SID_RE.match(sid):
            raise ValueError("invalid session id")
        return self.path / f"{sid}.json"

    def load(self, sid: str) -> dict | None:
        p = self._file(sid)
        try:
            record = json.loads(p.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.warning("unreadable session file %s, discarding", p.name)
            self.delete(sid)
            return None
        if self.clock() >= record.get("expires_at", 0):
            debug_event(logger, "session_expired", sid=token_preview(sid))
            self.delete(sid)
            return None
        return record.get("data") or {}

    def save(self, sid: str, data: dict) -> None:
        p = self._file(sid)
        record = {"data": data, "expires_at": self.clock() + self.ttl}
        # Unique temp name per writer; concurrent saves of one sid must not share it.
        fd, tmp = tempfile.mkstemp(dir=self.path, prefix=f"{sid}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f)
            os.replace(tmp, p)
        except BaseException:
            pathlib.Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, sid: str) -> None:
        try:
            self._file(sid).unlink()
        except FileNotFoundError:
            pass

    def reap(self) -> int:
        """Remove expired session files and stale temp files; returns how many were removed."""
        removed = 0
        now = self.clock()
        for p in self.path.glob("*.json"):
            try:
                record = json.loads(p.read_text(encoding="utf-8"))
                expired = now >= record.get("expires_at", 0)
            except (OSError, ValueError):
                expired = True
            if expired:
                p.unlink(missing_ok=True)
                removed += 1
        for p in self.path.glob("*.tmp"):
            try:
                stale = now - p.stat().st_mtime >= self.ttl
            except FileNotFoundError:
                continue
            if stale:
                p.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("reaped %s expired sessions from %s", removed, self.path)
        return removed


class RedisSessionStore:
    def __init__(self, client, ttl: int = SESSION_TTL, prefix: str = "workdrive:sess:") -> None:
        self.r = client
        self.ttl = ttl
        self.prefix = prefix

    def _key(self, sid: str) -> str:
        return f"{self.prefix}{sid}"

    def load(self, sid: str) -> dict | None:
        raw = self.r.get(self._key(sid))
        if not raw:
            return None
        return json.loads(raw)

    def save(self, sid: str, data: dict) -> None:
        self.r.setex(self._key(sid), self.ttl, json.dumps(data).encode())

    def delete(self, sid: str) -> None:
        self.r.delete(self._key(sid))

    def reap(self) -> int:
        # Redis expires keys on its own.
        return 0
