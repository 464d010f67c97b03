from __future__ import annotations

import types
import typing
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_storage(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_storage(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_storage(v) for v in value]
    return value


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The schema generator turns the description into SQL DDL or a document
    validator offline; nothing here touches the database at runtime.
    """

    # Logical collection / table name; subclasses must override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a plain dict suitable for DB persistence.

        Enums are stored by value and datetimes stay native so range
        queries (today's executions, due subscriptions) work server-side.
        """
        return _to_storage(self.model_dump(by_alias=True, exclude_none=True))

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            default = field.get_default(call_default_factory=False)
            if isinstance(default, Enum):
                default = default.value
            elif not isinstance(default, (int, float, str, bool)):
                default = None

            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": cls._is_optional(field.annotation),
                "default": default,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _is_optional(annotation: Any) -> bool:
        return type(None) in typing.get_args(annotation)

    @classmethod
    def _map_type(cls, annotation: Any) -> str:
        """
        Map a type annotation to a generic logical type.
        The schema generator translates these to dialect-specific types.
        """
        origin = typing.get_origin(annotation)
        if origin in (typing.Union, types.UnionType):
            members = [a for a in typing.get_args(annotation) if a is not type(None)]
            if len(members) == 1:
                return cls._map_type(members[0])
            # int | "unlimited" style sentinels are stored as mixed values
            return "mixed"
        if origin is typing.Literal:
            return "string"
        if origin in (list, tuple, set):
            return "array"
        if origin is dict:
            return "object"

        if isinstance(annotation, type):
            if issubclass(annotation, bool):
                return "boolean"
            if issubclass(annotation, Enum):
                return "string"
            if issubclass(annotation, int):
                return "integer"
            if issubclass(annotation, float):
                return "number"
            if issubclass(annotation, str):
                return "string"
            if issubclass(annotation, datetime):
                return "datetime"
            if issubclass(annotation, BaseModel):
                return "object"

        return "object"
