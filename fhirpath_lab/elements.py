"""
Wrapping evaluator output into `Element`s and resolving references.
"""

import logging
import re
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from fhirpathpy.engine.nodes import FP_DateTime, FP_Quantity, FP_Time, FP_Type

from fhirpath_lab.models import Element, TypeInfo
from fhirpath_lab.schema import SchemaProvider, normalize_type_name

log = logging.getLogger(__name__)

UCUM_SYSTEM = "http://unitsofmeasure.org"
CALENDAR_UNITS = {
    "year", "years", "month", "months", "week", "weeks", "day", "days",
    "hour", "hours", "minute", "minutes", "second", "seconds", "millisecond", "milliseconds",
}
# Type/id at the end of a relative or absolute reference, ignoring any _history suffix.
REFERENCE_RE = re.compile(r"(?:^|/)([A-Z][A-Za-z]+)/([A-Za-z0-9\-.]{1,64})(?:/_history/[^/]+)?$")
MEMBER_RE = re.compile(r"^(.*?)(\[\d+\])?$")
INTEGER_TYPES = {"integer", "positiveInt", "unsignedInt", "integer64"}
NON_STRING_TYPES = {"boolean", "integer", "decimal", "positiveInt", "unsignedInt", "integer64"}


def unwrap(item: Any) -> Any:
    """Return the JSON data behind a fhirpathpy ResourceNode (or the item itself)."""
    if isinstance(item, FP_Type):
        return item
    return getattr(item, "data", item)


class ElementLocator:
    """Maps JSON objects of a resource (by identity) to their resource paths."""

    def __init__(self, resource: Optional[Dict[str, Any]] = None):
        self.resource = resource
        self._paths: Dict[int, str] = {}
        self._ordered: List[Any] = []
        self._objects: Dict[str, Dict[str, Any]] = {}
        if isinstance(resource, dict):
            self._index(resource, resource.get("resourceType") or "Resource")

    def _index(self, obj: Dict[str, Any], path: str) -> None:
        self._paths[id(obj)] = path
        self._ordered.append(obj)
        self._objects[path] = obj
        for key, value in obj.items():
            if isinstance(value, dict):
                self._index(value, f"{path}.{key}")
            elif isinstance(value, list):
                for i, item in enumerate(value):
                    if isinstance(item, dict):
                        self._index(item, f"{path}.{key}[{i}]")

    def locate(self, value: Any) -> Optional[str]:
        if not isinstance(value, dict):
            return None
        path = self._paths.get(id(value))
        if path is not None:
            return path
        # the evaluator may hand back an equal copy rather than the indexed object
        for candidate in self._ordered:
            if candidate == value:
                return self._paths[id(candidate)]
        return None

    def locate_node(self, item: Any) -> Optional[str]:
        """
        Resource path of an evaluator node, from the property path fhirpathpy
        records while navigating (`Patient.name[0].given[1]`). Choice members
        are recorded without their type suffix (`Observation.value`), so the
        member is matched against the keys of its parent object.
        """
        prop = getattr(item, "propName", None)
        if not isinstance(prop, str) or "." not in prop:
            return None
        parent_path, _, member = prop.rpartition(".")
        parent = self._objects.get(parent_path)
        if parent is None:
            return None
        m = MEMBER_RE.match(member)
        name, index = m.group(1), m.group(2) or ""
        if name not in parent:
            name = next((k for k in parent if k.startswith(name) and k[len(name):][:1].isupper()), None)
            if name is None:
                return None
        return f"{parent_path}.{name}{index}"

    def locate_item(self, item: Any) -> Optional[str]:
        return self.locate(unwrap(item)) or self.locate_node(item)

    def __len__(self) -> int:
        return len(self._paths)


def quantity_json(quantity: FP_Quantity) -> Dict[str, Any]:
    value = quantity.value
    unit = str(quantity.unit or "").strip()
    if len(unit) >= 2 and unit[0] == unit[-1] == "'":
        unit = unit[1:-1]
    out: Dict[str, Any] = {"value": value}
    if unit:
        out["unit"] = unit
        if unit not in CALENDAR_UNITS:
            out["system"] = UCUM_SYSTEM
            out["code"] = unit
    return out


def _expected_type(expected_types: Optional[List[TypeInfo]]) -> Optional[str]:
    names = {t.name for t in expected_types or [] if t.name}
    return names.pop() if len(names) == 1 else None


def node_type(item: Any, schema: Optional[SchemaProvider] = None) -> Optional[str]:
    """FHIR type fhirpathpy attached to a navigated node (`HumanName`, `date`, `Quantity`, ...)."""
    path = getattr(item, "path", None)
    if not isinstance(path, str) or not path or path.startswith("_"):
        return None
    name = normalize_type_name(path)
    if "." in name:
        # element paths the model tables do not map to a type, e.g. backbone elements
        return schema.type_of_path(name) if schema is not None else None
    return name


def to_element(
    item: Any,
    locator: Optional[ElementLocator] = None,
    schema: Optional[SchemaProvider] = None,
    expected_types: Optional[List[TypeInfo]] = None,
) -> Element:
    """Wrap one evaluator output item with its instance type and resource path."""
    value = unwrap(item)
    expected = _expected_type(expected_types)
    location = locator.locate_item(item) if locator is not None else None
    fhir_type = node_type(item, schema)

    if isinstance(value, bool):
        return Element(value=value, instance_type="boolean", location=location)
    if isinstance(value, int):
        int_type = fhir_type if fhir_type in INTEGER_TYPES else expected if expected in INTEGER_TYPES else "integer"
        return Element(value=value, instance_type=int_type, location=location)
    if isinstance(value, (Decimal, float)):
        return Element(value=value, instance_type="decimal", location=location)
    if isinstance(value, FP_Quantity):
        return Element(value=quantity_json(value), instance_type="Quantity", location=location)
    if isinstance(value, FP_Time):
        return Element(value=str(value).lstrip("@T"), instance_type="time", location=location)
    if isinstance(value, FP_DateTime):
        text = str(value).lstrip("@")
        return Element(value=text, instance_type="dateTime" if "T" in text else "date", location=location)
    if isinstance(value, FP_Type):
        return Element(value=str(value), instance_type=None, location=location)
    if isinstance(value, str):
        for candidate in (fhir_type, expected):
            if candidate and candidate[:1].islower() and candidate not in NON_STRING_TYPES:
                return Element(value=value, instance_type=candidate, location=location)
        return Element(value=value, instance_type="string", location=location)

    if isinstance(value, dict):
        resource_type = value.get("resourceType")
        if isinstance(resource_type, str):
            return Element(value=value, instance_type=resource_type, location=location, is_resource=True)

        instance_type = fhir_type
        if schema is not None and location and instance_type in (None, "BackboneElement", "Element"):
            instance_type = schema.type_of_path(location) or instance_type
        if not instance_type:
            instance_type = expected
        return Element(value=value, instance_type=instance_type, location=location)

    return Element(value=value, instance_type=None, location=location)


def to_elements(items: Iterable[Any], locator: Optional[ElementLocator] = None,
                schema: Optional[SchemaProvider] = None,
                expected_types: Optional[List[TypeInfo]] = None) -> List[Element]:
    if items is None:
        return []
    if not isinstance(items, list):
        items = [items]
    return [to_element(i, locator, schema, expected_types) for i in items if unwrap(i) is not None]


class ReferenceResolver:
    """Implements FHIRPath `resolve()` for one resource without any server round trips."""

    def __init__(self, resource: Optional[Dict[str, Any]] = None):
        self.resource = resource if isinstance(resource, dict) else {}

    def resolve_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        if not reference:
            return None
        if reference.startswith("#"):
            wanted = reference[1:]
            for contained in self.resource.get("contained") or []:
                if isinstance(contained, dict) and contained.get("id") == wanted:
                    return contained
            return None
        m = REFERENCE_RE.search(reference)
        if m:
            return {"resourceType": m.group(1), "id": m.group(2)}
        log.debug("Cannot resolve reference %r", reference)
        return None

    def resolve(self, *args: Any) -> List[Dict[str, Any]]:
        """
        User invocation for `resolve()`. The input collection is the last
        positional argument (some fhirpathpy releases pass the context first).
        """
        inputs = args[-1] if args else []
        if not isinstance(inputs, list):
            inputs = [inputs]
        out: List[Dict[str, Any]] = []
        for item in inputs:
            data = unwrap(item)
            reference = data.get("reference") if isinstance(data, dict) else data
            if isinstance(reference, str):
                found = self.resolve_reference(reference)
                if found is not None:
                    out.append(found)
        return out

    def invocation_table(self) -> Dict[str, Any]:
        return {"resolve": {"fn": self.resolve, "arity": {0: []}}}
