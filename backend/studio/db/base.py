"""
Declarative base and shared column mixins.
"""

from sqlalchemy import Column, DateTime, func
from sqlalchemy.orm import declarative_base

from studio.core.clock import utcnow

Base = declarative_base()


# Python-side defaults keep the values loaded on the instance after a flush,
# so async code never triggers a lazy refresh to read them.
class CreatedAtMixin:
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())


class TimestampMixin(CreatedAtMixin):
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )
