import uuid as uuid_pkg
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Column, DateTime, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


class Profile(SQLModel, table=True):
    """
    Profile model - mirrors Supabase auth.users.

    The id comes from Supabase Auth. Profile records are created
    on first API call after authentication.

    subscription_plan / subscription_status mirror the user's subscription
    row for cheap reads; trial_used is permanent once set.
    """

    __tablename__ = "profiles"

    id: uuid_pkg.UUID = Field(
        primary_key=True,
        index=True,
        nullable=False,
        description="UUID from Supabase auth.users",
    )
    email: str | None = Field(default=None, max_length=255)

    # Subscription mirror
    subscription_status: str = Field(
        default="inactive",
        sa_column=Column(String(30), nullable=False, server_default="inactive"),
    )
    subscription_plan: str = Field(
        default="free",
        sa_column=Column(String(30), nullable=False, server_default="free"),
    )

    # Trial eligibility - never reset once true
    trial_used: bool = Field(
        default=False,
        nullable=False,
        sa_column_kwargs={"server_default": text("false")},
    )
    trial_used_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None, nullable=True, sa_type=DateTime(timezone=True)
    )
    trial_history: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSONB, nullable=False, server_default=text("'[]'::jsonb")),
    )

    created_at: datetime = Field(  # type: ignore[call-overload]
        default_factory=lambda: datetime.now(UTC),
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("now()")},
    )
    updated_at: datetime | None = Field(  # type: ignore[call-overload]
        default=None,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"onupdate": text("now()")},
    )
