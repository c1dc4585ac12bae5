from __future__ import annotations

import types
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Union, get_args, get_origin

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class never hits the database.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Primary key field; defaults to "id"
    primary_key: ClassVar[Optional[str]] = "id"

    # Fields that must be unique besides the primary key
    unique_fields: ClassVar[tuple[str, ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type, nullable = cls._map_type(field.annotation)
            default = None
            if not field.is_required() and field.default_factory is None:
                default = field.default
            if isinstance(default, Enum):
                default = default.value

            properties[name] = {
                "type": field_type,
                "nullable": nullable,
                "default": default,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "unique": list(cls.unique_fields),
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> tuple[str, bool]:
        """
        Map a type annotation to a generic logical type and a nullable flag.
        The schema generator translates logical types to dialect-specific ones.
        """
        nullable = False
        origin = get_origin(annotation)
        if origin is Union or origin is types.UnionType:
            args = [a for a in get_args(annotation) if a is not type(None)]
            nullable = len(args) != len(get_args(annotation))
            annotation = args[0] if len(args) == 1 else Any
            origin = get_origin(annotation)

        if origin in (list, tuple, set):
            return "array", nullable
        if origin is dict or annotation is dict:
            return "object", nullable
        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string", nullable
        if annotation is bool:
            return "boolean", nullable
        if annotation is int:
            return "integer", nullable
        if annotation is float:
            return "number", nullable
        if annotation is str:
            return "string", nullable
        if annotation is datetime:
            return "datetime", nullable

        name = getattr(annotation, "__name__", "object")
        return name.lower(), nullable
