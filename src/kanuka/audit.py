"""
Kanuka audit trail

Appends one JSON object per access-changing operation to
.kanuka/audit.jsonl so a team can see who granted access to whom.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logging import get_logger


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass
class AuditEntry:
    """A single audit log record"""
    operation: str
    user: str = ""
    user_uuid: str = ""
    target_user: str = ""
    target_uuid: str = ""
    files: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "ts": self.timestamp,
            "user": self.user,
            "uuid": self.user_uuid,
            "op": self.operation,
        }
        if self.target_user:
            data["target_user"] = self.target_user
        if self.target_uuid:
            data["target_uuid"] = self.target_uuid
        if self.files:
            data["files"] = list(self.files)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            operation=data.get("op", ""),
            user=data.get("user", ""),
            user_uuid=data.get("uuid", ""),
            target_user=data.get("target_user", ""),
            target_uuid=data.get("target_uuid", ""),
            files=list(data.get("files", [])),
            timestamp=data.get("ts", ""),
        )


class AuditLog:
    """Append-only JSON Lines log of project operations"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(self, entry: AuditEntry) -> bool:
        """
        Append an entry.

        A failure to write the audit log is logged and reported through the
        return value; it never fails the operation being audited.
        """
        line = json.dumps(entry.to_dict(), separators=(",", ":"))
        try:
            with open(self.path, "a") as f:
                f.write(line + "\n")
        except OSError as e:
            get_logger().warning(f"Could not write audit log {self.path}: {e}")
            return False
        return True

    def read(self, operation: Optional[str] = None) -> List[AuditEntry]:
        """Read entries, optionally filtered by operation. Malformed lines are skipped."""
        if not self.path.is_file():
            return []

        entries = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = AuditEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, AttributeError):
                    continue
                if operation is None or entry.operation == operation:
                    entries.append(entry)
        return entries
