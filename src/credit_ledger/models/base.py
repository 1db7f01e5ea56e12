from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # Fields the schema generator should index together with the primary key
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return self.model_dump(by_alias=True, exclude_none=True, mode="python")

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type = cls._map_type(field.annotation)
            default = field.get_default(call_default_factory=False)

            properties[name] = {
                "type": field_type,
                "nullable": not field.is_required(),
                "default": default if isinstance(default, (int, float, str, bool)) else None,
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "indexes": [list(index) for index in cls.indexes],
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict:
            return "object"

        args = getattr(annotation, "__args__", ())
        if args and type(None) in args:
            # Optional[X] -> X
            non_null = [a for a in args if a is not type(None)]
            if len(non_null) == 1:
                return DBSerializableModel._map_type(non_null[0])

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-valued enums
            return "string"

        # Fallback for datetime, UUID, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()
