"""
Per-version FHIR schema lookups over the fhirpathpy model tables.

A provider is built lazily, once per model version, and is read-only afterwards.
"""

import logging
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Set

from fhirpathpy.models import models as FHIRPATHPY_MODELS

from fhirpath_lab.models import TypeInfo

log = logging.getLogger(__name__)

# Request version -> fhirpathpy model key. R4B and R6 share the nearest published table.
VERSION_MODELS: Dict[str, str] = {
    "STU3": "stu3",
    "R3": "stu3",
    "R4": "r4",
    "R4B": "r4",
    "R5": "r5",
    "R6": "r5",
}
SUPPORTED_VERSIONS = ["STU3", "R4", "R4B", "R5", "R6"]

ANONYMOUS_TYPES = {"BackboneElement", "Element"}

SYSTEM_TYPES = {
    "String": "string",
    "Boolean": "boolean",
    "Integer": "integer",
    "Decimal": "decimal",
    "Date": "date",
    "DateTime": "dateTime",
    "Time": "time",
    "Quantity": "Quantity",
}


def normalize_version(fhir_version: Optional[str]) -> str:
    """Upper-case a requested version, falling back to R4 for anything unknown."""
    v = (fhir_version or "").strip().upper()
    return v if v in VERSION_MODELS else "R4"


def normalize_type_name(name: Any) -> str:
    """Map model type codes (`System.String`, `http://hl7.org/fhirpath/System.Boolean`) to FHIR names."""
    if isinstance(name, dict):
        name = name.get("code") or name.get("type") or ""
    name = str(name or "")
    if "/" in name:
        name = name.rsplit("/", 1)[-1]
    if name.startswith("System."):
        return SYSTEM_TYPES.get(name[len("System."):], name[len("System."):])
    return name


class SchemaProvider:
    """Element type lookups for one FHIR model table."""

    def __init__(self, model: Dict[str, Any], name: str = ""):
        self.model = model
        self.name = name
        self._path2type: Dict[str, Any] = model.get("path2Type") or {}
        self._choices: Dict[str, List[str]] = model.get("choiceTypePaths") or {}
        self._elsewhere: Dict[str, str] = model.get("pathsDefinedElsewhere") or {}
        self._parents: Dict[str, str] = model.get("type2Parent") or {}
        self._types: Set[str] = {p.split(".", 1)[0] for p in self._path2type}
        self._types.update(p.split(".", 1)[0] for p in self._choices)
        self._types.update(self._parents)
        # backbone elements only appear as prefixes of their members' paths
        self._backbones: Set[str] = set()
        for p in list(self._path2type) + list(self._choices):
            parts = p.split(".")
            self._backbones.update(".".join(parts[:i]) for i in range(2, len(parts)))

    def knows_type(self, type_name: str) -> bool:
        return type_name in self._types

    def is_resource_type(self, type_name: str) -> bool:
        seen = set()
        current = type_name
        while current and current not in seen:
            if current == "Resource":
                return True
            seen.add(current)
            current = self._parents.get(current)
        return False

    def parent_type(self, type_name: str) -> Optional[str]:
        return self._parents.get(type_name)

    def lookup_base(self, focus: TypeInfo) -> str:
        """The path a member of `focus` is looked up under (anonymous types use their element path)."""
        base = focus.element_path if focus.name in ANONYMOUS_TYPES and focus.element_path else focus.name
        return self._elsewhere.get(base, base)

    def element_types(self, focus: TypeInfo, member: str) -> List[TypeInfo]:
        """Types of `member` on `focus`, following choice types and inherited elements."""
        base: Optional[str] = self.lookup_base(focus)
        seen = set()
        while base and base not in seen:
            seen.add(base)
            found = self._lookup(base, member)
            if found:
                return found
            base = self._parents.get(base)
        return []

    def type_of_path(self, path: str) -> Optional[str]:
        """Type name at a resource path such as `Patient.contact[0].name` (indexes are ignored)."""
        segments = [re.sub(r"\[\d+\]$", "", s) for s in path.split(".") if s]
        if not segments:
            return None
        current = TypeInfo(name=segments[0], element_path=segments[0])
        for segment in segments[1:]:
            found = self.element_types(current, segment)
            if not found:
                return None
            current = found[0]
        return current.name

    def _lookup(self, base: str, member: str) -> List[TypeInfo]:
        path = f"{base}.{member}"
        path = self._elsewhere.get(path, path)
        if path in self._path2type:
            return [TypeInfo(name=normalize_type_name(self._path2type[path]), element_path=path)]
        if path in self._choices:
            return [TypeInfo(name=normalize_type_name(t), element_path=path) for t in self._choices[path]]
        if path in self._backbones:
            return [TypeInfo(name="BackboneElement", element_path=path)]

        # valueQuantity -> Observation.value restricted to Quantity
        for i in range(1, len(member)):
            if not member[i].isupper():
                continue
            choices = self._choices.get(f"{base}.{member[:i]}")
            if not choices:
                continue
            suffix = member[i:]
            for t in choices:
                t = normalize_type_name(t)
                if t[:1].upper() + t[1:] == suffix:
                    return [TypeInfo(name=t, element_path=f"{base}.{member}")]
        return []


@lru_cache(maxsize=None)
def _provider_for_model(model_key: str) -> SchemaProvider:
    log.info("Loading FHIR model tables for %s", model_key)
    model = FHIRPATHPY_MODELS.get(model_key)
    if model is None:
        log.warning("fhirpathpy has no model '%s'; type analysis is disabled for it", model_key)
        model = {}
    return SchemaProvider(model, model_key)


def get_schema(fhir_version: Optional[str]) -> SchemaProvider:
    """Return the (cached) schema provider for a request version; unknown versions get R4."""
    return _provider_for_model(VERSION_MODELS[normalize_version(fhir_version)])
