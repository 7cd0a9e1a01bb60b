"""Centralized SQLAlchemy declarative base for all ORM models.

Using a single base ensures every model is registered with the same metadata
registry, so ``create_tables()`` always builds the complete schema.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models in credbroker."""

    pass
