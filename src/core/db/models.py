from datetime import datetime, timezone

from sqlalchemy import DateTime, text
from sqlalchemy.sql import func
from sqlmodel import Field as SQLModelField
from sqlmodel import SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimestampMixin(SQLModel):
    """Mixin for created/updated timestamps."""

    created_at: datetime = SQLModelField(
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={"server_default": text("CURRENT_TIMESTAMP"), "index": True},
    )
    updated_at: datetime = SQLModelField(
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime(timezone=True),
        sa_column_kwargs={
            "server_default": text("CURRENT_TIMESTAMP"),
            "onupdate": func.now(),
        },
    )
