"""
Shared Models

Base classes for domain models with automatic ObjectId handling.
Uses Pydantic v2's core schema system for seamless ObjectId serialization.
"""

from decimal import Decimal
from enum import Enum
from typing import Any
from bson import ObjectId
from pydantic import BaseModel, ConfigDict
from pydantic_core import core_schema


class PyObjectId(str):
    """
    ObjectId-compatible string id for Pydantic v2.

    Accepts ObjectId or str on input and always holds the 24-char hex string,
    so ids compare and serialize as plain strings.
    """

    @classmethod
    def __get_pydantic_core_schema__(
        cls,
        source_type: Any,
        handler: Any
    ) -> core_schema.CoreSchema:
        """
        Generate Pydantic core schema for ObjectId.

        Handles:
        - ObjectId input → string
        - String input → validated string
        """
        return core_schema.no_info_plain_validator_function(
            cls.validate,
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )

    @classmethod
    def validate(cls, value: Any) -> str:
        if isinstance(value, ObjectId):
            return str(value)
        if isinstance(value, str) and ObjectId.is_valid(value):
            return value
        raise ValueError(f"Invalid ObjectId: {value!r}")


def to_object_id(value: Any) -> ObjectId:
    """Convert a string id to ObjectId (pass ObjectId through)."""
    if isinstance(value, ObjectId):
        return value
    return ObjectId(str(value))


def to_storable(obj: Any) -> Any:
    """
    Recursively convert values MongoDB / JSON can't hold as-is.

    Decimal -> str (no precision loss), Enum -> value, tuple -> list.
    """
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {k: to_storable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_storable(item) for item in obj]
    return obj


class DomainModel(BaseModel):
    """
    Base domain model for all domain entities.

    Provides:
    - Automatic ObjectId handling via PyObjectId
    - Proper Pydantic v2 configuration
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        populate_by_name=True,
    )
