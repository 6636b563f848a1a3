from __future__ import annotations

from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union, get_args, get_origin

from pydantic import BaseModel


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

    # Primary key field; per-user rows use "user_id"
    primary_key: ClassVar[Optional[str]] = "id"

    # Fields the store must enforce as unique (idempotency keys)
    unique_fields: ClassVar[Tuple[str, ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enum members are stored by value so every backend sees plain strings.
        """
        data = self.model_dump(by_alias=True, exclude_none=True)
        return {k: v.value if isinstance(v, Enum) else v for k, v in data.items()}

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
            annotation, nullable = cls._unwrap_optional(field.annotation)
            default = field.get_default(call_default_factory=False)
            if isinstance(default, Enum):
                default = default.value

            properties[name] = {
                "type": cls._map_type(annotation),
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
    def _unwrap_optional(annotation: Any) -> Tuple[Any, bool]:
        if get_origin(annotation) is Union:
            args = [a for a in get_args(annotation) if a is not type(None)]
            if len(args) == 1:
                return args[0], True
        return annotation, False

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = get_origin(annotation)
        if origin in (list, tuple, set):
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string"
        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"

        # Fallback for datetime, UUID, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()
