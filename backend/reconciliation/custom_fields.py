"""
Readers for CRM custom fields.

The CRM returns custom fields either as a list of ``{"id", "value"}``
pairs or as a flat ``{field_id: value}`` map, under ``customField`` or
``customFields``. Callers go through a CustomFieldReader and never
inspect the raw shape.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

RawCustomFields = Union[List[Dict[str, Any]], Dict[str, Any], None]


class CustomFieldReader(ABC):

    @abstractmethod
    def get(self, field_id: str) -> Optional[Any]:
        """Value for ``field_id`` or None."""

    @abstractmethod
    def with_value(self, field_id: str, value: Any) -> RawCustomFields:
        """A copy of the raw fields, in the same shape, with ``field_id`` set."""

    def get_str(self, field_id: str) -> Optional[str]:
        value = self.get(field_id)
        if value is None:
            return None
        value = str(value).strip()
        return value or None


class ListCustomFieldReader(CustomFieldReader):
    """``[{"id": ..., "value": ...}, ...]``"""

    def __init__(self, fields: List[Dict[str, Any]]):
        self.fields = [f for f in fields if isinstance(f, dict)]

    def get(self, field_id: str) -> Optional[Any]:
        for item in self.fields:
            if item.get("id") == field_id:
                return item.get("value", item.get("field_value"))
        return None

    def with_value(self, field_id: str, value: Any) -> List[Dict[str, Any]]:
        updated = []
        replaced = False
        for item in self.fields:
            if item.get("id") == field_id:
                updated.append({**item, "value": value})
                replaced = True
            else:
                updated.append(dict(item))
        if not replaced:
            updated.append({"id": field_id, "value": value})
        return updated


class MapCustomFieldReader(CustomFieldReader):
    """``{"<field id>": value, ...}``"""

    def __init__(self, fields: Dict[str, Any]):
        self.fields = dict(fields)

    def get(self, field_id: str) -> Optional[Any]:
        return self.fields.get(field_id)

    def with_value(self, field_id: str, value: Any) -> Dict[str, Any]:
        return {**self.fields, field_id: value}


def custom_field_reader(raw: RawCustomFields) -> CustomFieldReader:
    """Pick the reader matching the shape of ``raw``."""
    if isinstance(raw, list):
        return ListCustomFieldReader(raw)
    if isinstance(raw, dict):
        return MapCustomFieldReader(raw)
    return ListCustomFieldReader([])


def extract_custom_fields(payload: Dict[str, Any]) -> RawCustomFields:
    """Raw custom fields from a CRM contact payload, whichever key carries them."""
    for key in ("customFields", "customField", "custom_fields"):
        value = payload.get(key)
        if value:
            return value
    return None
