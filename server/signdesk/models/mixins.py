import uuid
from datetime import datetime, timezone
from typing import Annotated

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]
Timestamp = Annotated[datetime, mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)]


class CreatedAtMixin:
    created_at: Mapped[Timestamp]
