"""Hash-chained append-only action log.

The registry and the lifecycle manager append one record per mutation or
runtime operation. Records are never read back by the fleet engine; the chain
only exists so that an operator can check that nothing was edited after the
fact.

Log format (one JSON object per line, newline-delimited):
    {
        "seq": <int>,          // monotonic sequence number
        "ts": "<iso8601>",     // UTC timestamp
        "actor": "<str>",      // "registry", "lifecycle", "reconciler", "cli", ...
        "action": "<str>",     // e.g. "register", "spawn", "stop"
        "success": <bool>,
        "detail": {...},       // truncated / redacted values
        "prev_hash": "<hex>",  // SHA-256 of previous entry
        "hash": "<hex>"        // SHA-256 of this entry (sans "hash" field itself)
    }
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

# Maximum length of a single detail value stored in the log.
_DETAIL_VALUE_MAX = 512

_SENSITIVE_MARKERS = ("TOKEN", "KEY", "SECRET", "PASSWORD")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


def _truncate(value: object, max_len: int = _DETAIL_VALUE_MAX) -> str:
    text = str(value)
    if len(text) > max_len:
        return text[:max_len] + "…[truncated]"
    return text


def sanitize_detail(detail: dict[str, Any]) -> dict[str, Any]:
    """Redact secret-looking keys and truncate long values, recursively."""
    clean: dict[str, Any] = {}
    for key, value in detail.items():
        if any(marker in key.upper() for marker in _SENSITIVE_MARKERS):
            clean[key] = "[redacted]"
        elif isinstance(value, dict):
            clean[key] = sanitize_detail(value)
        elif isinstance(value, (bool, int, float)) or value is None:
            clean[key] = value
        elif isinstance(value, (list, tuple)):
            clean[key] = [_truncate(v) for v in value]
        else:
            clean[key] = _truncate(value)
    return clean


class ActionLog:
    """Append-only, hash-chained action log.

    Task safe: an asyncio.Lock serialises writes. Files rotate per UTC day
    and are opened in append mode so partial writes never clobber history.
    """

    def __init__(self, log_dir: Path, enabled: bool = True, sanitize: bool = True) -> None:
        self._log_dir = log_dir
        self._enabled = enabled
        self._sanitize = sanitize
        self._lock = asyncio.Lock()
        self._seq = 0
        self._prev_hash = GENESIS_HASH

    def _log_file(self) -> Path:
        """Return the current log file path (one file per UTC day)."""
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._log_dir / f"actions-{date_str}.ndjson"

    async def start(self) -> None:
        """Create the log directory and resume the chain from today's file."""
        if not self._enabled:
            return
        self._log_dir.mkdir(parents=True, exist_ok=True)
        log_file = self._log_file()
        if log_file.exists():
            self._resume_from(log_file)

    def _resume_from(self, log_file: Path) -> None:
        last_line: str | None = None
        try:
            with open(log_file) as fh:
                for line in fh:
                    line = line.strip()
                    if line:
                        last_line = line
            if last_line:
                entry = json.loads(last_line)
                self._seq = entry.get("seq", 0)
                self._prev_hash = entry.get("hash", GENESIS_HASH)
        except (OSError, json.JSONDecodeError):
            logger.warning("Could not resume action log from %s, starting fresh", log_file)

    async def append(
        self,
        actor: str,
        action: str,
        success: bool = True,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Append one record. Write failures are logged, never raised."""
        if not self._enabled:
            return
        detail = detail or {}
        if self._sanitize:
            detail = sanitize_detail(detail)

        async with self._lock:
            # A new UTC day starts a new file and a new chain
            log_file = self._log_file()
            if not log_file.exists():
                self._seq = 0
                self._prev_hash = GENESIS_HASH

            self._seq += 1
            entry: dict[str, Any] = {
                "seq": self._seq,
                "ts": _now_iso(),
                "actor": actor,
                "action": action,
                "success": success,
                "detail": detail,
                "prev_hash": self._prev_hash,
            }
            entry_hash = _sha256_hex(json.dumps(entry, sort_keys=True, default=str))
            entry["hash"] = entry_hash
            line = json.dumps(entry, sort_keys=True, default=str)
            self._prev_hash = entry_hash

            try:
                self._log_dir.mkdir(parents=True, exist_ok=True)
                with open(log_file, "a") as fh:
                    fh.write(line + "\n")
            except OSError:
                logger.error("Failed to write action log entry %s/%s", actor, action)

    def verify_chain(self, log_file: Path | None = None) -> tuple[bool, str]:
        """Verify the hash-chain integrity of a log file.

        Returns:
            (ok, message) where ok=True means the chain is intact.
        """
        if log_file is None:
            log_file = self._log_file()
        if not log_file.exists():
            return True, "no log file"

        prev_hash = GENESIS_HASH
        prev_seq = 0
        try:
            with open(log_file) as fh:
                for lineno, line in enumerate(fh, 1):
                    line = line.strip()
                    if not line:
                        continue
                    entry = json.loads(line)
                    stored_hash = entry.pop("hash", "")
                    computed = _sha256_hex(json.dumps(entry, sort_keys=True, default=str))
                    if computed != stored_hash:
                        return False, f"line {lineno}: hash mismatch"
                    if entry.get("prev_hash") != prev_hash:
                        return False, f"line {lineno}: chain broken"
                    if entry.get("seq", 0) != prev_seq + 1:
                        return (
                            False,
                            f"line {lineno}: sequence gap (expected {prev_seq + 1}, "
                            f"got {entry.get('seq')})",
                        )
                    prev_hash = stored_hash
                    prev_seq = entry["seq"]
        except (json.JSONDecodeError, OSError) as exc:
            return False, f"read error: {exc}"

        return True, f"chain intact ({prev_seq} entries)"
