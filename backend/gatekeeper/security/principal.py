"""
Gatekeeper — Principal
========================

What:  The resolved identity of a requester plus the channel it arrived on.
How:   Frozen dataclass built per request from a user record; secret fields
       are never copied across.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

# Field names that must never leave the user store
SECRET_FIELDS = frozenset({"password", "password_hash", "hashed_password", "secret"})

ADMIN_ROLES = frozenset({"admin", "superadmin"})


class AuthSource(str, Enum):
    JWT = "jwt"
    SESSION = "session"
    TEST = "test"

    @property
    def is_bearer(self) -> bool:
        """Bearer-carried identities are not a CSRF vector."""
        return self in (AuthSource.JWT, AuthSource.TEST)


def strip_secrets(user: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in user.items() if k not in SECRET_FIELDS}


@dataclass(frozen=True)
class Principal:
    id: str
    auth_source: AuthSource
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_user(cls, user: Mapping[str, Any], auth_source: AuthSource) -> "Principal":
        """
        Build a principal from a user record.

        Accepts both `id` and `_id` as the identifier so documents exported from
        the legacy document store resolve the same way as relational rows.
        """
        record = strip_secrets(user)
        user_id = record.get("id") or record.get("_id")
        if user_id is None:
            raise ValueError("user record has no id")
        return cls(
            id=str(user_id),
            auth_source=auth_source,
            email=record.get("email"),
            name=record.get("name"),
            role=record.get("role"),
        )

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "auth_source": self.auth_source.value,
        }
