"""
Serializing expression trees for the fhirpath-lab UI.

The UI renders `parseDebugTree` from a nested JSON node shape
(`ExpressionType`, `Name`, `Arguments`, `ReturnType`, source location) and
expects its own expression type names:

- ChildExpression (member name without the leading dot)
- FunctionCallExpression
- VariableRefExpression (name without `%`)
- ConstantExpression (literals, quantities and type specifiers)
- AxisExpression `builtin.this` / `builtin.index` / `builtin.total`, and
  `builtin.that` for the implicit input of a root-level member or function
"""

import json
from typing import Any, Dict, List, Optional

from fhirpath_lab import expressions as ex
from fhirpath_lab.expressions import Expression
from fhirpath_lab.models import AnalysisResult, TypeInfo

SCOPE_NAMES = {"this": "builtin.this", "index": "builtin.index", "total": "builtin.total"}


def return_type(types: Optional[List[TypeInfo]], separator: str = ", ") -> Optional[str]:
    """Distinct type names joined by `separator`, with `[]` for collections; None when nothing is named."""
    names: List[str] = []
    for t in types or []:
        if t.name and t.name not in names:
            names.append(t.name)
    if not names:
        return None
    text = separator.join(names)
    if any(t.is_collection for t in types) and not text.endswith("[]"):
        text += "[]"
    return text


class JsonAstVisitor:
    """Converts an `Expression` tree into the UI's JSON node dicts."""

    def __init__(self, analysis: Optional[AnalysisResult] = None, root_type: Optional[str] = None):
        self.analysis = analysis
        self.root_type = root_type

    def visit(self, expr: Expression) -> Dict[str, Any]:
        kind = expr.kind
        if kind == ex.CHILD:
            node = self._node(expr, "ChildExpression", expr.name)
            node["Arguments"] = [self._focus(expr)]
        elif kind == ex.FUNCTION:
            node = self._node(expr, "FunctionCallExpression", expr.name)
            node["Arguments"] = [self._focus(expr)] + [self.visit(a) for a in expr.arguments]
        elif kind == ex.CONSTANT:
            node = self._node(expr, "ConstantExpression", expr.name)
            node["ReturnType"] = expr.value_type or "string"
        elif kind == ex.QUANTITY:
            node = self._node(expr, "ConstantExpression", f"{expr.value} '{expr.unit or ''}'")
            node["ReturnType"] = "Quantity"
        elif kind == ex.TYPE_SPECIFIER:
            node = self._node(expr, "ConstantExpression", expr.name)
        elif kind == ex.SCOPE:
            node = self._node(expr, "AxisExpression", SCOPE_NAMES.get(expr.name, f"builtin.{expr.name}"))
        elif kind == ex.VARIABLE:
            node = self._node(expr, "VariableRefExpression", expr.name)
        elif kind == ex.EMPTY:
            node = self._node(expr, "Empty", "{}")
        elif kind in (ex.BINARY, ex.UNARY, ex.INDEXER, ex.PARENTHESIZED):
            name = {ex.INDEXER: "[]", ex.PARENTHESIZED: "()"}.get(kind, expr.name)
            node = self._node(expr, kind, name)
            node["Arguments"] = [self.visit(a) for a in expr.arguments]
        else:
            node = self._node(expr, kind, expr.name)
        return node

    def _focus(self, expr: Expression) -> Dict[str, Any]:
        if expr.focus is not None:
            return self.visit(expr.focus)
        return self.expression_scope_node()

    def expression_scope_node(self) -> Dict[str, Any]:
        return {"ExpressionType": "AxisExpression", "Name": "builtin.that", "ReturnType": self.root_type or ""}

    def _node(self, expr: Expression, expression_type: str, name: str) -> Dict[str, Any]:
        node: Dict[str, Any] = {"ExpressionType": expression_type, "Name": name}
        if expr.is_located:
            node["Position"] = expr.position
            node["Length"] = expr.length
            node["Line"] = expr.line
            node["Column"] = expr.column
        if self.analysis is not None:
            rt = return_type(self.analysis.node_types.get(expr.node_id))
            if rt:
                node["ReturnType"] = rt
        return node


def expression_to_json_ast(expr: Expression, analysis: Optional[AnalysisResult] = None,
                           root_type: Optional[str] = None) -> str:
    node = JsonAstVisitor(analysis, root_type).visit(expr)
    if analysis is not None:
        rt = return_type(analysis.inferred_types, " | ")
        if rt:
            node["ReturnType"] = rt
    return json.dumps(node, indent=2)


# ---------- Text ----------
def _constant_text(expr: Expression) -> str:
    if expr.value_type == "string":
        escaped = str(expr.value).replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"
    if expr.value_type == "boolean":
        return "true" if expr.value else "false"
    return expr.name


def expression_to_text(expr: Expression) -> str:
    """Render a tree back into FHIRPath source (normalized spacing)."""
    kind = expr.kind
    if kind == ex.CHILD:
        return f"{expression_to_text(expr.focus)}.{expr.name}" if expr.focus is not None else expr.name
    if kind == ex.FUNCTION:
        args = ", ".join(expression_to_text(a) for a in expr.arguments)
        prefix = f"{expression_to_text(expr.focus)}." if expr.focus is not None else ""
        return f"{prefix}{expr.name}({args})"
    if kind == ex.BINARY:
        left, right = expr.arguments
        return f"{expression_to_text(left)} {expr.name} {expression_to_text(right)}"
    if kind == ex.UNARY:
        return f"{expr.name}{expression_to_text(expr.arguments[0])}"
    if kind == ex.INDEXER:
        collection, index = expr.arguments
        return f"{expression_to_text(collection)}[{expression_to_text(index)}]"
    if kind == ex.PARENTHESIZED:
        return f"({expression_to_text(expr.arguments[0])})"
    if kind == ex.CONSTANT:
        return _constant_text(expr)
    if kind == ex.QUANTITY:
        return expr.name
    if kind == ex.SCOPE:
        return f"${expr.name}"
    if kind == ex.VARIABLE:
        return f"%{expr.name}"
    if kind == ex.EMPTY:
        return "{}"
    return expr.name


def expression_to_debug_text(expr: Expression, analysis: Optional[AnalysisResult] = None) -> str:
    text = expression_to_text(expr)
    types: List[str] = []
    for t in analysis.inferred_types if analysis is not None else []:
        s = str(t)
        if s and s not in types:
            types.append(s)
    if not types:
        return f"{text}\r\n"
    return f"{text} : {' | '.join(types)}\r\n"
