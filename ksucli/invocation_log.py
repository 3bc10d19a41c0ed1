"""Hash-chained audit log of daemon invocations."""

from __future__ import annotations

import hashlib
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

GENESIS_HASH = "0" * 64


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat_utc(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def _default_state() -> Dict[str, Any]:
    return {"sequence": 0, "chain_hash": GENESIS_HASH}


class InvocationLogWriter:
    """Append one JSON line per daemon invocation, chained by SHA-256."""

    def __init__(self, path: Path, *, state_path: Optional[Path] = None) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if state_path is None:
            state_path = self.path.with_name(self.path.stem + "_state.json")
        self.state_path = state_path
        self._lock = threading.RLock()
        self._state = self._load_state()

    # ------------------------------------------------------------------
    def _load_state(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self.state_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return _default_state()
        except json.JSONDecodeError:
            return _default_state()
        if not isinstance(payload, dict):
            return _default_state()

        state = _default_state()
        try:
            state.update(
                {
                    "sequence": int(payload.get("sequence", 0)),
                    "chain_hash": str(payload.get("chain_hash", GENESIS_HASH)),
                }
            )
        except (TypeError, ValueError):
            return _default_state()
        return state

    def _write_state(self) -> None:
        self.state_path.write_text(
            json.dumps(self._state, ensure_ascii=False, indent=2) + "\n",
            encoding="utf-8",
        )

    @property
    def sequence(self) -> int:
        with self._lock:
            return int(self._state["sequence"])

    # ------------------------------------------------------------------
    def record_event(self, *, kind: str, detail: Mapping[str, Any]) -> Dict[str, Any]:
        """Append an event and return it with its sequence and chain hash."""

        normalized = json.loads(json.dumps(dict(detail), ensure_ascii=False))
        with self._lock:
            sequence = self._state["sequence"] + 1
            event: Dict[str, Any] = {
                "sequence": sequence,
                "ts": _isoformat_utc(_now_utc()),
                "kind": kind,
                "detail": normalized,
            }
            base_json = json.dumps(event, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
            chain_hash = hashlib.sha256(
                (self._state["chain_hash"] + base_json).encode("utf-8")
            ).hexdigest()
            event["chain_hash"] = chain_hash

            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event, ensure_ascii=False) + "\n")
            self._state.update({"sequence": sequence, "chain_hash": chain_hash})
            self._write_state()
            return event

    def record_invocation(
        self,
        *,
        command: str,
        exit_code: int,
        duration_ms: float,
        streamed: bool,
        privilege: str,
        mount_mode: str,
    ) -> Dict[str, Any]:
        return self.record_event(
            kind="daemon_invocation",
            detail={
                "command": command,
                "exit_code": int(exit_code),
                "success": exit_code == 0,
                "duration_ms": round(duration_ms, 3),
                "streamed": bool(streamed),
                "privilege": privilege,
                "mount_mode": mount_mode,
            },
        )


__all__ = ["InvocationLogWriter", "GENESIS_HASH"]
