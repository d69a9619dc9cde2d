from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass
class User:
    id: str
    username: str
    email: str
    role: str = ROLE_USER
    bio: str = ""
    profile_image: str = ""
    followers_count: int = 0
    following_count: int = 0
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        *,
        role: str = ROLE_USER,
        bio: str = "",
        profile_image: str = "",
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            role=role,
            bio=bio,
            profile_image=profile_image,
        )


@dataclass(frozen=True)
class UserSnapshot:
    """Display-relevant user fields cached alongside every active token."""

    id: str
    username: str
    email: str
    role: str = ROLE_USER
    bio: str = ""
    profile_image: str = ""
    followers_count: int = 0
    following_count: int = 0

    @classmethod
    def from_user(cls, user: User) -> "UserSnapshot":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            bio=user.bio or "",
            profile_image=user.profile_image or "",
            followers_count=user.followers_count,
            following_count=user.following_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Optional["UserSnapshot"]:
        """Build a snapshot from a decoded payload; None when unusable.

        Unknown keys are ignored and missing optional fields take defaults,
        so payloads written by older or newer producers still load.
        """
        if not isinstance(data, dict):
            return None
        user_id = data.get("id")
        if not user_id or not isinstance(user_id, str):
            return None
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values.setdefault("username", "")
        values.setdefault("email", "")
        try:
            return cls(**values)
        except TypeError:
            return None


@dataclass(frozen=True)
class TokenRecord:
    """Value stored under ``auth:token:<jti>``."""

    user_id: str
    snapshot: UserSnapshot

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "snapshot": self.snapshot.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["TokenRecord"]:
        if not isinstance(data, dict):
            return None
        snapshot = UserSnapshot.from_dict(data.get("snapshot"))
        if snapshot is None:
            return None
        user_id = data.get("user_id") or snapshot.id
        return cls(user_id=user_id, snapshot=snapshot)
