"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Common column type annotations
- The application lifecycle status enum
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, Uuid, func
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# Identities are generated by the submission coordinator, never by the database
UUIDPrimaryKey = Annotated[uuid.UUID, mapped_column(Uuid(as_uuid=True), primary_key=True)]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False),
]


class Base(DeclarativeBase):
    """Declarative base for all models."""

    metadata = metadata
    registry = type_registry


class ApplicationStatus(enum.Enum):
    """Loan application lifecycle states.

    Only PENDING is produced at submission. The remaining states are set by
    downstream decisioning services.
    """

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"
