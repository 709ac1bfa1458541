"""Base model and utilities for all SQLAlchemy models."""

from typing import Any, ClassVar
from uuid import uuid4

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeEngine

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map: ClassVar[dict[Any, TypeEngine[Any]]] = {
        dict[str, Any]: JSONType,
    }
