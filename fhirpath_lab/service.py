import logging
import re
from functools import lru_cache
from importlib import metadata
from typing import Any, Dict, Optional

from fhirpath_lab.analyzer import ExpressionAnalyzer
from fhirpath_lab.evaluator import ContextEvaluationError, ExpressionEvaluator
from fhirpath_lab.formatter import ResultFormatter
from fhirpath_lab.models import FhirPathRequest, FhirPathResult
from fhirpath_lab.schema import normalize_version

log = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def engine_version() -> str:
    """Installed fhirpathpy version without pre-release or build suffixes (`2.0.1-dev+abc` -> `2.0.1`)."""
    try:
        full = metadata.version("fhirpathpy")
    except metadata.PackageNotFoundError:
        return "unknown"
    return re.split(r"[-+]", full, maxsplit=1)[0] or full


class FhirPathService:
    """Parse, analyze, evaluate and format one `$fhirpath` request."""

    def __init__(self,
                 analyzer: Optional[ExpressionAnalyzer] = None,
                 evaluator: Optional[ExpressionEvaluator] = None,
                 formatter: Optional[ResultFormatter] = None):
        self.analyzer = analyzer or ExpressionAnalyzer()
        self.evaluator = evaluator or ExpressionEvaluator()
        self.formatter = formatter or ResultFormatter(f"fhirpathpy-{engine_version()}")

    def process_request(self, request: FhirPathRequest) -> Dict[str, Any]:
        return self.formatter.format_result(self.evaluate(request))

    def evaluate(self, request: FhirPathRequest) -> FhirPathResult:
        if not request.expression:
            return FhirPathResult(request=request, error="Expression parameter is required", error_code="required")

        resource = request.resource
        root_type = resource.get("resourceType") if isinstance(resource, dict) else None
        fhir_version = normalize_version(request.fhir_version)

        parsed, context_expr, error = self.analyzer.parse_and_analyze(
            request.expression, request.context, root_type, fhir_version, resource)
        if error is not None:
            diagnostics = request.context if error.startswith("Invalid context") else request.expression
            return FhirPathResult(request=request, error=error, error_diagnostics=diagnostics)

        try:
            results = self.evaluator.evaluate(
                parsed,
                request.expression,
                resource,
                context=request.context,
                variables=request.variables,
                fhir_version=fhir_version,
                debug_trace=request.debug_trace,
            )
        except ContextEvaluationError as e:
            return FhirPathResult(request=request, error=f"Invalid context expression: {e}",
                                  error_diagnostics=request.context)

        return FhirPathResult(
            request=request,
            parsed_expression=parsed,
            context_expression=context_expr,
            results=results,
        )
