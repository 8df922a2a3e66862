"""
Parsing and static type analysis of FHIRPath expressions.

The analysis is best effort: member navigation is resolved against the
fhirpathpy model tables, function results follow a fixed table, and whether a
node yields a collection is read from the sample resource (a JSON array at
that element path) since the model tables carry no cardinality.
"""

import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from fhirpath_lab import expressions as ex
from fhirpath_lab.expressions import Expression, ExpressionSyntaxError
from fhirpath_lab.models import AnalysisResult, ParsedExpression, TypeInfo, ValidationIssue
from fhirpath_lab.schema import ANONYMOUS_TYPES, SchemaProvider, get_schema, normalize_type_name

log = logging.getLogger(__name__)

# ---------- Function result table ----------
# Same type as the focus, cardinality kept.
KEEP_FOCUS = {
    "where", "tail", "skip", "take", "distinct", "trace", "intersect", "exclude",
    "repeat", "descendants", "children",
}
# Same type as the focus, single item.
SINGLE_FOCUS = {"first", "last", "single", "abs"}
FIXED_RESULTS: Dict[str, Tuple[str, bool]] = {
    "exists": ("boolean", False), "empty": ("boolean", False), "all": ("boolean", False),
    "allTrue": ("boolean", False), "anyTrue": ("boolean", False), "allFalse": ("boolean", False),
    "anyFalse": ("boolean", False), "hasValue": ("boolean", False), "not": ("boolean", False),
    "is": ("boolean", False), "isDistinct": ("boolean", False), "subsetOf": ("boolean", False),
    "supersetOf": ("boolean", False), "contains": ("boolean", False), "startsWith": ("boolean", False),
    "endsWith": ("boolean", False), "matches": ("boolean", False), "memberOf": ("boolean", False),
    "conformsTo": ("boolean", False), "subsumes": ("boolean", False), "subsumedBy": ("boolean", False),
    "toBoolean": ("boolean", False),
    "count": ("integer", False), "length": ("integer", False), "indexOf": ("integer", False),
    "toInteger": ("integer", False), "ceiling": ("integer", False), "floor": ("integer", False),
    "truncate": ("integer", False),
    "toDecimal": ("decimal", False), "round": ("decimal", False), "sqrt": ("decimal", False),
    "exp": ("decimal", False), "ln": ("decimal", False), "log": ("decimal", False),
    "power": ("decimal", False),
    "toString": ("string", False), "substring": ("string", False), "upper": ("string", False),
    "lower": ("string", False), "replace": ("string", False), "replaceMatches": ("string", False),
    "trim": ("string", False), "join": ("string", False), "encode": ("string", False),
    "decode": ("string", False), "escape": ("string", False), "unescape": ("string", False),
    "toChars": ("string", True), "split": ("string", True),
    "toDate": ("date", False), "today": ("date", False),
    "toDateTime": ("dateTime", False), "now": ("dateTime", False),
    "toTime": ("time", False), "timeOfDay": ("time", False),
    "toQuantity": ("Quantity", False),
    "extension": ("Extension", True),
}
# Functions whose arguments are evaluated once per focus item.
ITERATING = {"where", "select", "all", "exists", "repeat", "aggregate", "sort"}

BOOLEAN_OPERATORS = {
    "and", "or", "xor", "implies", "=", "!=", "~", "!~", "<", ">", "<=", ">=", "in", "contains", "is",
}
ROOT_VARIABLES = {"resource", "rootResource", "context"}


def array_paths(resource: Optional[Dict[str, Any]]) -> Set[str]:
    """Dotted element paths (no indexes) that hold a JSON array in the resource."""
    found: Set[str] = set()
    if not isinstance(resource, dict):
        return found

    def _walk(obj: Dict[str, Any], path: str) -> None:
        for key, value in obj.items():
            if key == "resourceType" or key.startswith("_"):
                continue
            child = f"{path}.{key}"
            if isinstance(value, list):
                found.add(child)
                for item in value:
                    if isinstance(item, dict):
                        _walk(item, child)
            elif isinstance(value, dict):
                _walk(value, child)

    _walk(resource, resource.get("resourceType") or "")
    return found


def _single(types: List[TypeInfo]) -> List[TypeInfo]:
    return [t.model_copy(update={"is_collection": False}) for t in types]


def _many(types: List[TypeInfo]) -> List[TypeInfo]:
    return [t.model_copy(update={"is_collection": True}) for t in types]


def _primitive(name: str, collection: bool = False) -> List[TypeInfo]:
    return [TypeInfo(name=name, is_collection=collection)]


class _TypeWalker:
    def __init__(self, schema: SchemaProvider, root_type: str, arrays: Set[str]):
        self.schema = schema
        self.root_type = root_type
        self.arrays = arrays
        self.node_types: Dict[int, List[TypeInfo]] = {}
        self.paths: Dict[int, Optional[str]] = {}
        self.issues: List[ValidationIssue] = []

    def visit(self, node: Expression, scope: List[TypeInfo], scope_path: Optional[str],
              this: List[TypeInfo], this_path: Optional[str]) -> List[TypeInfo]:
        types, path = self._visit(node, scope, scope_path, this, this_path)
        self.node_types[node.node_id] = types
        self.paths[node.node_id] = path
        return types

    def _visit(self, node: Expression, scope, scope_path, this, this_path) -> Tuple[List[TypeInfo], Optional[str]]:
        kind = node.kind
        if kind == ex.CONSTANT:
            return _primitive(node.value_type or "string"), None
        if kind == ex.QUANTITY:
            return _primitive("Quantity"), None
        if kind in (ex.EMPTY, ex.TYPE_SPECIFIER):
            return [], None
        if kind == ex.VARIABLE:
            if node.name in ROOT_VARIABLES and self.root_type:
                return [TypeInfo(name=self.root_type, element_path=self.root_type)], self.root_type
            if node.name in ("ucum", "sct", "loinc"):
                return _primitive("string"), None
            return [], None
        if kind == ex.SCOPE:
            if node.name == "this":
                return _single(this), this_path
            if node.name == "index":
                return _primitive("integer"), None
            return [], None
        if kind == ex.PARENTHESIZED:
            inner = node.arguments[0]
            return self.visit(inner, scope, scope_path, this, this_path), self.paths.get(inner.node_id)
        if kind == ex.UNARY:
            operand = node.arguments[0]
            return self.visit(operand, scope, scope_path, this, this_path), None
        if kind == ex.INDEXER:
            collection, index = node.arguments
            types = self.visit(collection, scope, scope_path, this, this_path)
            self.visit(index, scope, scope_path, this, this_path)
            return _single(types), self.paths.get(collection.node_id)
        if kind == ex.BINARY:
            return self._binary(node, scope, scope_path, this, this_path), None
        if kind == ex.CHILD:
            return self._child(node, scope, scope_path, this, this_path)
        if kind == ex.FUNCTION:
            return self._function(node, scope, scope_path, this, this_path)
        return [], None

    def _focus(self, node: Expression, scope, scope_path, this, this_path) -> Tuple[List[TypeInfo], Optional[str]]:
        if node.focus is None:
            return this, this_path
        types = self.visit(node.focus, scope, scope_path, this, this_path)
        return types, self.paths.get(node.focus.node_id)

    def _child(self, node: Expression, scope, scope_path, this, this_path) -> Tuple[List[TypeInfo], Optional[str]]:
        focus, focus_path = self._focus(node, scope, scope_path, this, this_path)
        name = node.name

        # A leading type name (Patient.name) filters the input by type.
        if node.focus is None and name[:1].isupper() and self.schema.knows_type(name):
            return [TypeInfo(name=name, element_path=name)], name if name == self.root_type else focus_path

        path = f"{focus_path}.{name}" if focus_path else None
        is_collection = any(t.is_collection for t in focus) or (path in self.arrays if path else False)
        found: List[TypeInfo] = []
        for focus_type in focus:
            for t in self.schema.element_types(focus_type, name):
                if all(f.name != t.name for f in found):
                    found.append(t.model_copy(update={"is_collection": is_collection}))

        if not found and focus and all(self._is_known(t) for t in focus):
            on_type = focus[0].element_path if focus[0].name in ANONYMOUS_TYPES else focus[0].name
            self.issues.append(ValidationIssue(
                severity="warning",
                message=f"Element '{name}' not found on type '{on_type}'",
                location=f"{on_type}.{name}",
            ))
        return found, path

    def _is_known(self, t: TypeInfo) -> bool:
        if t.name in ANONYMOUS_TYPES:
            return bool(t.element_path)
        return self.schema.knows_type(t.name)

    def _function(self, node: Expression, scope, scope_path, this, this_path) -> Tuple[List[TypeInfo], Optional[str]]:
        focus, focus_path = self._focus(node, scope, scope_path, this, this_path)
        name = node.name
        collection = any(t.is_collection for t in focus)

        if name in ITERATING:
            arg_this, arg_path = _single(focus), focus_path
        else:
            arg_this, arg_path = this, this_path
        arg_types = [self.visit(a, scope, scope_path, arg_this, arg_path) for a in node.arguments]

        if name in KEEP_FOCUS:
            return focus, focus_path
        if name in SINGLE_FOCUS:
            return _single(focus), focus_path
        if name in FIXED_RESULTS:
            type_name, many = FIXED_RESULTS[name]
            return _primitive(type_name, many), None
        if name in ("ofType", "as") and node.arguments:
            type_name = normalize_type_name(node.arguments[0].name.split(".")[-1])
            return [TypeInfo(name=type_name, is_collection=collection and name == "ofType",
                             element_path=type_name)], focus_path
        if name in ("select", "aggregate") and arg_types:
            types = arg_types[0]
            if collection or any(t.is_collection for t in types):
                types = _many(types)
            path = self.paths.get(node.arguments[0].node_id)
            return types, path
        if name in ("union", "combine"):
            merged = list(focus)
            for types in arg_types:
                merged.extend(t for t in types if all(m.name != t.name for m in merged))
            return _many(merged), None
        if name == "iif" and len(arg_types) >= 2:
            merged = list(arg_types[1])
            for t in arg_types[2] if len(arg_types) > 2 else []:
                if all(m.name != t.name for m in merged):
                    merged.append(t)
            return merged, None
        return [], None

    def _binary(self, node: Expression, scope, scope_path, this, this_path) -> List[TypeInfo]:
        left, right = node.arguments
        left_types = self.visit(left, scope, scope_path, this, this_path)
        right_types = self.visit(right, scope, scope_path, this, this_path)
        op = node.name

        if op in BOOLEAN_OPERATORS:
            return _primitive("boolean")
        if op == "as":
            type_name = normalize_type_name(right.name.split(".")[-1])
            return [TypeInfo(name=type_name, element_path=type_name)]
        if op == "|":
            merged = list(left_types)
            merged.extend(t for t in right_types if all(m.name != t.name for m in merged))
            return _many(merged)
        if op == "&":
            return _primitive("string")
        names = {t.name for t in left_types + right_types}
        if op == "+" and "string" in names:
            return _primitive("string")
        if op == "/":
            return _primitive("decimal")
        if op in ("div", "mod") and names == {"integer"}:
            return _primitive("integer")
        if op in ("*", "-", "+", "div", "mod"):
            if "decimal" in names and names <= {"integer", "decimal"}:
                return _primitive("decimal")
            if "Quantity" in names and names <= {"integer", "decimal", "Quantity"}:
                return _primitive("Quantity")
        return _single(left_types)


class ExpressionAnalyzer:
    """Parses expressions and infers their result types for one request."""

    def parse(self, expression: str) -> Expression:
        return ex.parse(expression)

    def analyze(self, expr: Expression, scope_type: str, fhir_version: str,
                resource: Optional[Dict[str, Any]] = None,
                scope_path: Optional[str] = None,
                scope_element_path: Optional[str] = None) -> Tuple[AnalysisResult, Optional[str]]:
        """
        Infer the types of every node of `expr` evaluated against `scope_type`.
        Returns the analysis and the instance path of the root node (when known).
        """
        schema = get_schema(fhir_version)
        root_type = (resource or {}).get("resourceType") or scope_type
        walker = _TypeWalker(schema, root_type, array_paths(resource))
        scope = [TypeInfo(name=scope_type, element_path=scope_element_path or scope_type)]
        path = scope_path or (scope_type if scope_type == root_type else None)

        inferred = walker.visit(expr, scope, path, scope, path)
        result = AnalysisResult(
            inferred_types=inferred,
            node_types=walker.node_types,
            issues=walker.issues,
        )
        return result, walker.paths.get(expr.node_id)

    def parse_and_analyze(
        self,
        expression: str,
        context: Optional[str],
        root_type: Optional[str],
        fhir_version: str,
        resource: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[ParsedExpression], Optional[Expression], Optional[str]]:
        """Returns (parsed, context expression, error message)."""
        try:
            parsed = self.parse(expression)
        except ExpressionSyntaxError as e:
            log.warning("Invalid expression %r: %s", expression, e)
            return None, None, f"Invalid expression: {e}"

        context_expr: Optional[Expression] = None
        if context:
            try:
                context_expr = self.parse(context)
            except ExpressionSyntaxError as e:
                log.warning("Invalid context expression %r: %s", context, e)
                return None, None, f"Invalid context expression: {e}"

        scope_type = root_type
        analysis: Optional[AnalysisResult] = None
        issues: Optional[List[ValidationIssue]] = None
        analysis_error: Optional[str] = None

        if root_type:
            try:
                scope_path, scope_element_path = None, None
                if context_expr is not None:
                    context_analysis, scope_path = self.analyze(context_expr, root_type, fhir_version, resource)
                    if context_analysis.inferred_types and context_analysis.inferred_types[0].name:
                        scope_type = context_analysis.inferred_types[0].name
                        scope_element_path = context_analysis.inferred_types[0].element_path
                analysis, _ = self.analyze(parsed, scope_type, fhir_version, resource,
                                           scope_path, scope_element_path)
                issues = list(analysis.issues)
            except Exception as e:
                log.warning("Type analysis of %r failed: %s", expression, e)
                analysis, issues = None, None
                analysis_error = str(e) or e.__class__.__name__

        return ParsedExpression(
            expression=parsed,
            analysis=analysis,
            validation_issues=issues,
            expression_scope_type=scope_type,
            analysis_error=analysis_error,
        ), context_expr, None
