from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from tokengate.storage.models import UserSnapshot

USER_STATE_QUEUE = "user-state"


class JobKind(str, Enum):
    """Job names carried on the user-state queue."""

    SNAPSHOT_UPDATED = "USER_SNAPSHOT_UPDATED"
    INVALIDATE_TOKENS = "USER_INVALIDATE_TOKENS"


class JobOutcome(str, Enum):
    APPLIED = "applied"
    DROPPED = "dropped"


@dataclass(frozen=True)
class SnapshotUpdatedJob:
    snapshot: UserSnapshot

    def to_payload(self) -> Dict[str, Any]:
        return {"snapshot": self.snapshot.to_dict()}

    @classmethod
    def from_payload(cls, data: Any) -> Optional["SnapshotUpdatedJob"]:
        if not isinstance(data, dict):
            return None
        snapshot = UserSnapshot.from_dict(data.get("snapshot"))
        return cls(snapshot=snapshot) if snapshot else None


@dataclass(frozen=True)
class InvalidateTokensJob:
    user_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {"userId": self.user_id}

    @classmethod
    def from_payload(cls, data: Any) -> Optional["InvalidateTokensJob"]:
        if not isinstance(data, dict):
            return None
        user_id = data.get("userId")
        if not user_id or not isinstance(user_id, str):
            return None
        return cls(user_id=user_id)


@dataclass
class Delivery:
    """A dequeued job awaiting acknowledgement."""

    message_id: str
    name: str
    data: Any = field(default_factory=dict)
    attempts: int = 1
