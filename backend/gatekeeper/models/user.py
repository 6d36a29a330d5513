"""
Gatekeeper — User SQLAlchemy Model
====================================

What:  ORM model for the `users` table the identity resolver looks principals up in.
Who:   SqlUserStore (read-only). Account creation and password handling live in
       the auth service, not here.

Table notes:
    - id is a string of up to 36 characters so identifiers migrated from the
      document store (24-character ObjectId hex) and new UUIDs share one column.
    - password_hash is mapped so the table definition is complete, but
      `to_public_dict()` never includes it.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Boolean, Index, String, text
from sqlalchemy.dialects.postgresql import TIMESTAMP
from sqlalchemy.orm import Mapped, mapped_column

from gatekeeper.database import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        comment="User identifier (ObjectId hex or UUID string)",
    )

    email: Mapped[str] = mapped_column(
        String(320),
        nullable=False,
        unique=True,
    )

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # user, admin, superadmin
    role: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="user",
        server_default=text("'user'"),
    )

    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    __table_args__ = (
        Index("idx_users_email", "email"),
    )

    def to_public_dict(self) -> Dict[str, Any]:
        """User fields safe to hand to the gatekeeper (no password hash)."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self) -> str:
        return f"<User(id={self.id}, role='{self.role}')>"
