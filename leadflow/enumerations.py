"""Enumeration catalog lookups and CRM query-string encoding."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ENUMERATION_TYPE = "enumeration"


class EnumerationItem(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("ID", "id"))
    value: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("VALUE", "value", "label")
    )


class EnumerationField(BaseModel):
    """One field definition as published by the CRM's field catalog."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("ID", "id"))
    field_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("FIELD_NAME", "field_name")
    )
    name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("name", "title", "NAME")
    )
    type: Optional[str] = None
    items: List[EnumerationItem] = Field(default_factory=list)

    def aliases(self) -> Iterable[str]:
        return [a for a in (self.id, self.field_name, self.name) if a]

    def resolve(self, label: str) -> Optional[str]:
        for item in self.items:
            if item.id and (item.value == label or item.id == label):
                return item.id
        return None


class EnumerationCatalog:
    """Lookup table from every known field alias to its enumeration definition.

    Built once per dispatch. Fields whose catalog type is not ``enumeration``
    are left out, so their values always pass through unchanged.
    """

    def __init__(self, fields: Iterable[Mapping[str, Any]] | None = None) -> None:
        self._by_alias: Dict[str, EnumerationField] = {}
        for raw in fields or []:
            definition = EnumerationField.model_validate(raw)
            if definition.type != ENUMERATION_TYPE or not definition.items:
                continue
            for alias in definition.aliases():
                self._by_alias.setdefault(alias, definition)

    def __len__(self) -> int:
        return len(self._by_alias)

    def convert(self, field: str, value: Any) -> Any:
        """Return the CRM identifier for ``value`` when ``field`` is an enumeration."""
        definition = self._by_alias.get(field)
        if definition is None:
            return value
        if isinstance(value, list):
            return [self.convert(field, item) for item in value]
        if not isinstance(value, str):
            return value
        resolved = definition.resolve(value)
        if resolved is None:
            return value
        logger.debug(f"Converted {field}={value!r} to enumeration id {resolved}")
        return resolved

    def convert_all(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        return {key: self.convert(key, value) for key, value in fields.items()}


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_crm_query(entity_id: Any, fields: Mapping[str, Any]) -> List[Tuple[str, str]]:
    """Flatten ``fields`` into the CRM's ``FIELDS[...]`` query-parameter format.

    Scalars become ``FIELDS[key]``, lists repeat ``FIELDS[key][]`` once per
    element and dicts expand to ``FIELDS[key][sub]``.
    """
    params: List[Tuple[str, str]] = [("ID", _stringify(entity_id))]
    for key, value in fields.items():
        if isinstance(value, (list, tuple)):
            params.extend((f"FIELDS[{key}][]", _stringify(item)) for item in value)
        elif isinstance(value, dict):
            params.extend(
                (f"FIELDS[{key}][{sub_key}]", _stringify(sub_value))
                for sub_key, sub_value in value.items()
            )
        else:
            params.append((f"FIELDS[{key}]", _stringify(value)))
    return params
