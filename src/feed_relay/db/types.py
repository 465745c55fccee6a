"""Column type helpers shared by the ORM models."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Enum as SAEnum


def enum_column(enum_cls: type[Enum], length: int = 32) -> SAEnum:
    """Store a string enum by value in a plain VARCHAR column.

    Args:
        enum_cls: Enum class whose members carry string values
        length: Column width

    Returns:
        SQLAlchemy Enum type that persists ``member.value`` and loads members
    """
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )
