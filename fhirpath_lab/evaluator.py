"""
Evaluation of parsed expressions with fhirpathpy.

One `EvaluationResult` is produced per evaluation context. With a context
expression every node it selects is evaluated separately; otherwise the whole
resource is the single context.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import fhirpathpy

from fhirpath_lab import expressions as ex
from fhirpath_lab.elements import ElementLocator, ReferenceResolver, to_elements
from fhirpath_lab.expressions import Expression
from fhirpath_lab.models import EvaluationResult, NodeEvaluationEntry, ParsedExpression, TraceEntry, TypeInfo
from fhirpath_lab.parameters import parameter_value
from fhirpath_lab.schema import SchemaProvider, get_schema

log = logging.getLogger(__name__)

NOT_EVALUABLE = {ex.TYPE_SPECIFIER, ex.EMPTY}


class ContextEvaluationError(Exception):
    """Raised when the context expression cannot be evaluated against the resource."""


def spine(expr: Expression) -> List[Expression]:
    """Nodes the expression navigates through, children before parents (function arguments excluded)."""
    out: List[Expression] = []
    if expr.focus is not None:
        out.extend(spine(expr.focus))
    if expr.kind != ex.FUNCTION:
        for arg in expr.arguments:
            out.extend(spine(arg))
    out.append(expr)
    return out


def source_span(expr: Expression) -> Optional[Tuple[int, int]]:
    """Start and end offsets covering a node and everything below it."""
    located = [n for n in expr.walk() if n.is_located]
    if not located:
        return None
    return min(n.position for n in located), max(n.position + n.length for n in located)


class ExpressionEvaluator:
    """Runs fhirpathpy against a resource for every evaluation context."""

    def __init__(self, engine: Callable[..., Any] = fhirpathpy.evaluate):
        self.engine = engine

    def build_environment(self, resource: Optional[Dict[str, Any]],
                          variables: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """`%resource`, `%rootResource` and one variable per part of the `variables` parameter."""
        env: Dict[str, Any] = {}
        if resource is not None:
            env["resource"] = resource
            env["rootResource"] = resource
        for part in (variables or {}).get("part") or []:
            name = part.get("name")
            value = part.get("resource") if "resource" in part else parameter_value(part)
            if not name or value is None:
                continue
            env[name] = value
        return env

    def _options(self, resource: Optional[Dict[str, Any]],
                 trace: Optional[Callable[..., None]] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "userInvocationTable": ReferenceResolver(resource).invocation_table(),
            # results stay ResourceNodes carrying their FHIR type and property path
            "returnRawData": True,
        }
        if trace is not None:
            options["traceFn"] = trace
        return options

    def run(self, target: Any, text: str, env: Dict[str, Any], schema: SchemaProvider,
            options: Dict[str, Any]) -> List[Any]:
        result = self.engine(target, text, dict(env), schema.model or None, options)
        if result is None:
            return []
        return result if isinstance(result, list) else [result]

    def get_evaluation_contexts(
        self,
        resource: Optional[Dict[str, Any]],
        context: Optional[str],
        env: Dict[str, Any],
        schema: SchemaProvider,
        locator: ElementLocator,
    ) -> Dict[str, Any]:
        """Map of context path -> node to evaluate against (nodes stay fhirpathpy ResourceNodes)."""
        if not context or resource is None:
            return {"": resource}
        try:
            nodes = self.run(resource, context, env, schema, self._options(resource))
        except Exception as e:
            log.warning("Context expression %r failed: %s", context, e)
            raise ContextEvaluationError(str(e) or e.__class__.__name__) from e

        contexts: Dict[str, Any] = {}
        for i, node in enumerate(nodes):
            key = locator.locate_item(node) or f"{context}[{i}]"
            if key in contexts:
                key = f"{context}[{i}]"
            contexts[key] = node
        return contexts

    def evaluate(
        self,
        parsed: ParsedExpression,
        source: str,
        resource: Optional[Dict[str, Any]],
        context: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        fhir_version: str = "R4",
        debug_trace: bool = False,
    ) -> List[EvaluationResult]:
        schema = get_schema(fhir_version)
        locator = ElementLocator(resource)
        env = self.build_environment(resource, variables)
        node_types = parsed.analysis.node_types if parsed.analysis else {}
        root_types = node_types.get(parsed.expression.node_id)

        results: List[EvaluationResult] = []
        for context_path, target in self.get_evaluation_contexts(resource, context, env, schema, locator).items():
            trace_output: List[TraceEntry] = []

            def _trace(label: Any, x: Any) -> None:
                trace_output.append(TraceEntry(name=str(label or ""), focus=to_elements(x, locator, schema)))

            try:
                raw = self.run(target if target is not None else {}, source, env, schema,
                               self._options(resource, _trace))
            except Exception as e:
                log.warning("Evaluation of %r failed: %s", source, e)
                results.append(EvaluationResult(
                    context_path=context_path,
                    trace_output=trace_output,
                    error=f"Expression evaluation error: {e}",
                ))
                continue

            entries: List[NodeEvaluationEntry] = []
            if debug_trace:
                entries = self.debug_entries(parsed.expression, source, target, env, schema, locator, node_types)

            results.append(EvaluationResult(
                context_path=context_path,
                output_values=to_elements(raw, locator, schema, root_types),
                trace_output=trace_output,
                debug_trace_entries=entries,
            ))
        return results

    def debug_entries(
        self,
        expr: Expression,
        source: str,
        target: Any,
        env: Dict[str, Any],
        schema: SchemaProvider,
        locator: ElementLocator,
        node_types: Dict[int, List[TypeInfo]],
    ) -> List[NodeEvaluationEntry]:
        """Evaluate every located spine node on its own and record what it produced."""
        outputs: Dict[int, List[Any]] = {}
        entries: List[NodeEvaluationEntry] = []
        options = self._options(locator.resource)

        for node in spine(expr):
            span = source_span(node)
            if not node.is_located or span is None or node.kind in NOT_EVALUABLE:
                continue
            try:
                raw = self.run(target if target is not None else {}, source[span[0]:span[1]], env, schema, options)
            except Exception as e:
                log.debug("Debug evaluation of %r failed: %s", source[span[0]:span[1]], e)
                continue
            outputs[node.node_id] = raw

            focus_node = node.focus if node.focus is not None else (
                node.arguments[0] if node.kind == ex.INDEXER else None)
            focus_raw = outputs.get(focus_node.node_id, []) if focus_node is not None else []
            focus_types = node_types.get(focus_node.node_id) if focus_node is not None else None

            entries.append(NodeEvaluationEntry(
                position=node.position,
                length=node.length,
                name=node.name,
                results=to_elements(raw, locator, schema, node_types.get(node.node_id)),
                focus_elements=to_elements(focus_raw, locator, schema, focus_types),
            ))
        return entries
