"""
Shaping evaluation results into the FHIR Parameters resource fhirpath-lab reads.
"""

import json
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from fhirpath_lab.ast_json import expression_to_debug_text, expression_to_json_ast
from fhirpath_lab.config import EXTENSION_URL_JSON_VALUE, EXTENSION_URL_RESOURCE_PATH
from fhirpath_lab.models import Element, FhirPathResult, NodeEvaluationEntry, TraceEntry, ValidationIssue

log = logging.getLogger(__name__)

SEVERITIES = {"error", "warning", "information"}
OUTCOME_CODES = {"required", "invalid", "not-found"}


# ---------- OperationOutcome ----------
def create_operation_outcome(severity: str, code: str, message: str,
                             diagnostics: Optional[str] = None) -> Dict[str, Any]:
    issue: Dict[str, Any] = {
        "severity": severity if severity in SEVERITIES else "error",
        "code": code if code in OUTCOME_CODES else "exception",
        "details": {"text": message},
    }
    if diagnostics:
        issue["diagnostics"] = diagnostics
    return {"resourceType": "OperationOutcome", "issue": [issue]}


def outcome_parameters(outcome: Dict[str, Any]) -> Dict[str, Any]:
    """Wrap an OperationOutcome the way the UI expects failures inside a 200 response."""
    return {"resourceType": "Parameters", "id": "fhirpath", "parameter": [{"name": "outcome", "resource": outcome}]}


def issue_code(issue: ValidationIssue) -> str:
    message = issue.message.lower()
    if "not found" in message or "unknown" in message:
        return "not-found"
    if "not supported" in message:
        return "not-supported"
    if "invalid" in message or "incorrect" in message:
        return "invalid"
    if "required" in message:
        return "required"
    return "informational"


def validation_outcome(issues: List[ValidationIssue]) -> Dict[str, Any]:
    out = []
    for issue in issues:
        entry: Dict[str, Any] = {
            "severity": issue.severity if issue.severity in SEVERITIES else "information",
            "code": issue_code(issue),
            "diagnostics": issue.message,
        }
        if issue.location:
            entry["expression"] = [issue.location]
        out.append(entry)
    return {"resourceType": "OperationOutcome", "issue": out}


# ---------- Parameter helpers ----------
def add_part(parent: Dict[str, Any], name: str, value: str) -> Dict[str, Any]:
    part = {"name": name, "valueString": value}
    parent.setdefault("part", []).append(part)
    return part


def add_extension(param: Dict[str, Any], url: str, value: str) -> None:
    param.setdefault("extension", []).append({"url": url, "valueString": value})


def value_key(instance_type: str) -> str:
    return f"value{instance_type[:1].upper()}{instance_type[1:]}"


def element_part(name: str, element: Element) -> Dict[str, Any]:
    """One typed output value: `value[x]`, `resource`, or a json-value extension."""
    part: Dict[str, Any] = {"name": name}
    if element.location:
        add_extension(part, EXTENSION_URL_RESOURCE_PATH, element.location)

    if element.is_resource:
        part["resource"] = element.value
    elif element.instance_type and element.value is not None:
        part[value_key(element.instance_type)] = element.value
    else:
        add_extension(part, EXTENSION_URL_JSON_VALUE, json.dumps(element.value, default=str))
    return part


class ResultFormatter:
    """Builds the `$fhirpath` response Parameters from a FhirPathResult."""

    def __init__(self, evaluator: str = "fhirpathpy"):
        self.evaluator = evaluator

    def format_result(self, result: FhirPathResult) -> Dict[str, Any]:
        if not result.is_success:
            return outcome_parameters(create_operation_outcome(
                "error", result.error_code, result.error, result.error_diagnostics))

        parameters: Dict[str, Any] = {"resourceType": "Parameters", "id": "fhirpath", "parameter": []}
        config = self.config_parameter(result)
        parameters["parameter"].append(config)

        parsed = result.parsed_expression
        if parsed is not None:
            add_part(config, "parseDebugTree", expression_to_json_ast(
                parsed.expression, parsed.analysis, parsed.expression_scope_type))
            add_part(config, "parseDebug", expression_to_debug_text(parsed.expression, parsed.analysis))

            if parsed.analysis is not None:
                types: List[str] = []
                for t in parsed.analysis.inferred_types:
                    s = str(t)
                    if s and s not in types:
                        types.append(s)
                if types:
                    add_part(config, "expectedReturnType", " | ".join(types))

            if parsed.validation_issues:
                config["part"].append({"name": "debugOutcome", "resource": validation_outcome(parsed.validation_issues)})

            if parsed.analysis_error:
                parameters["parameter"].append({"name": "warning",
                                                "valueString": f"Validation skipped: {parsed.analysis_error}"})

        for evaluation in result.results:
            if evaluation.error is not None:
                parameters["parameter"].append({"name": "error", "valueString": evaluation.error})
                return parameters

            parameters["parameter"].append(
                self.result_parameter(evaluation.context_path, evaluation.output_values, evaluation.trace_output))
            if evaluation.debug_trace_entries:
                parameters["parameter"].append(self.debug_trace_parameter(evaluation.debug_trace_entries))

        return parameters

    def config_parameter(self, result: FhirPathResult) -> Dict[str, Any]:
        request = result.request
        config: Dict[str, Any] = {"name": "parameters", "part": []}
        add_part(config, "evaluator", f"{self.evaluator} ({request.fhir_version})")
        if request.context:
            add_part(config, "context", request.context)
        if request.expression:
            add_part(config, "expression", request.expression)
        if request.resource_id:
            add_part(config, "resource", request.resource_id)
        elif request.resource is not None:
            config["part"].append({"name": "resource", "resource": request.resource})
        if request.terminology_server_url:
            add_part(config, "terminologyServerUrl", request.terminology_server_url)
        return config

    def result_parameter(self, context_path: str, output_values: List[Element],
                         trace_output: List[TraceEntry]) -> Dict[str, Any]:
        param: Dict[str, Any] = {"name": "result"}
        if context_path:
            param["valueString"] = context_path
        parts = [element_part(e.instance_type or "(null)", e) for e in output_values]

        for trace in trace_output:
            trace_part: Dict[str, Any] = {"name": "trace", "valueString": trace.name}
            focus = [element_part(e.instance_type or "", e) for e in trace.focus]
            if focus:
                trace_part["part"] = focus
            parts.append(trace_part)

        if parts:
            param["part"] = parts
        return param

    def debug_trace_parameter(self, entries: List[NodeEvaluationEntry]) -> Dict[str, Any]:
        grouped: "OrderedDict[str, List[NodeEvaluationEntry]]" = OrderedDict()
        for entry in entries:
            grouped.setdefault(entry.key(), []).append(entry)

        wrapper: Dict[str, Any] = {"name": "debug-trace", "part": []}
        for key, group in grouped.items():
            parts: List[Dict[str, Any]] = []
            for entry in group:
                parts.extend({"name": "resource-path", "valueString": r.location}
                             for r in entry.results if r.location)
                parts.extend({"name": "focus-resource-path", "valueString": f.location}
                             for f in entry.focus_elements if f.location)
                if entry.this_element is not None and entry.this_element.location:
                    parts.append({"name": "this-resource-path", "valueString": entry.this_element.location})
                if entry.index is not None:
                    parts.append({"name": "index", "valueInteger": entry.index})
            node: Dict[str, Any] = {"name": key}
            if parts:
                node["part"] = parts
            wrapper["part"].append(node)
        return wrapper
