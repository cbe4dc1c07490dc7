"""
User model as read from the identity/courier store.

Couriers, dispatchers and administrators share one table. The role column
is a free-form string owned by the identity collaborator; eligibility
checks normalize it against configured allow-lists instead of trusting a
fixed enum.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from lastmile.database.base import BaseModel


class User(BaseModel):
    """
    Identity record consumed by dispatch.

    Attributes:
        full_name: Display name
        email: Contact email, unique
        phone: Contact phone
        role: Role name as stored by the identity collaborator
        is_active: Whether the account may receive work
        last_known_lat: Last reported courier latitude
        last_known_lon: Last reported courier longitude
        last_position_at: When the last position was reported
    """

    __tablename__ = "users"

    full_name: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        comment="Display name",
    )

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="Contact email",
    )

    phone: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        comment="Contact phone",
    )

    role: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
        comment="Role name as provided by the identity store",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the user may receive work",
    )

    last_known_lat: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Last reported latitude",
    )

    last_known_lon: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Last reported longitude",
    )

    last_position_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the last position was reported",
    )

    __table_args__ = (
        Index("ix_users_role_active", "role", "is_active"),
    )

    @property
    def normalized_role(self) -> str:
        return (self.role or "").strip().lower()

    @property
    def last_known_position(self) -> Optional[tuple[float, float]]:
        if self.last_known_lat is None or self.last_known_lon is None:
            return None
        return (self.last_known_lat, self.last_known_lon)
