"""
Regression tests for the Parameters shape returned to fhirpath-lab.
"""

import json
from decimal import Decimal

import pytest

from fhirpath_lab import expressions as ex
from fhirpath_lab.config import EXTENSION_URL_JSON_VALUE, EXTENSION_URL_RESOURCE_PATH
from fhirpath_lab.expressions import Expression
from fhirpath_lab.formatter import (
    ResultFormatter, create_operation_outcome, issue_code, validation_outcome,
)
from fhirpath_lab.models import (
    AnalysisResult, Element, EvaluationResult, FhirPathRequest, FhirPathResult, NodeEvaluationEntry,
    ParsedExpression, TraceEntry, TypeInfo, ValidationIssue,
)


@pytest.fixture
def formatter():
    return ResultFormatter("fhirpathpy-1.2.3")


def _request(patient=None, **kwargs):
    fields = {"expression": "name", "fhir_version": "R5", "resource": patient}
    fields.update(kwargs)
    return FhirPathRequest(**fields)


def _parsed(analysis=None, **kwargs):
    expr = Expression(kind=ex.CHILD, name="name", position=0, length=4, line=1, column=1)
    return ParsedExpression(expression=expr, analysis=analysis, expression_scope_type="Patient", **kwargs)


def _names(patient):
    return [
        Element(value=patient["name"][0], instance_type="HumanName", location="Patient.name[0]"),
        Element(value=patient["name"][1], instance_type="HumanName", location="Patient.name[1]"),
    ]


def _param(parameters, name):
    return [p for p in parameters["parameter"] if p["name"] == name]


def _part(param, name):
    return next(p for p in param["part"] if p["name"] == name)


class TestFailures:
    """Errors become an outcome parameter wrapping an OperationOutcome."""

    def test_missing_expression(self, formatter):
        result = FhirPathResult(request=_request(), error="Expression parameter is required", error_code="required")
        out = formatter.format_result(result)
        assert out["resourceType"] == "Parameters"
        assert [p["name"] for p in out["parameter"]] == ["outcome"]
        issue = out["parameter"][0]["resource"]["issue"][0]
        assert issue["severity"] == "error"
        assert issue["code"] == "required"
        assert issue["details"]["text"] == "Expression parameter is required"

    def test_invalid_expression_carries_diagnostics(self, formatter):
        result = FhirPathResult(request=_request(), error="Invalid expression: boom", error_diagnostics="name.(")
        issue = formatter.format_result(result)["parameter"][0]["resource"]["issue"][0]
        assert issue["code"] == "invalid"
        assert issue["diagnostics"] == "name.("

    def test_outcome_code_and_severity_mapping(self):
        issue = create_operation_outcome("fatal", "timeout", "x")["issue"][0]
        assert issue["severity"] == "error"
        assert issue["code"] == "exception"
        assert "diagnostics" not in issue

    def test_evaluation_error_stops_formatting(self, formatter, patient):
        """Test an error parameter is appended and later contexts are dropped."""
        result = FhirPathResult(
            request=_request(patient),
            parsed_expression=_parsed(),
            results=[
                EvaluationResult(context_path="Patient.name[0]", output_values=[Element(value="x", instance_type="string")]),
                EvaluationResult(context_path="Patient.name[1]", error="Expression evaluation error: boom"),
                EvaluationResult(context_path="Patient.name[2]"),
            ],
        )
        out = formatter.format_result(result)
        assert [p["name"] for p in out["parameter"]] == ["parameters", "result", "error"]
        assert out["parameter"][-1]["valueString"] == "Expression evaluation error: boom"


class TestConfigParameter:
    """The `parameters` parameter echoes the request and the parse output."""

    def test_echoed_parts(self, formatter, patient):
        request = _request(patient, context="Patient", terminology_server_url="https://tx.example.org/r4")
        out = formatter.format_result(FhirPathResult(request=request, parsed_expression=_parsed()))
        config = _param(out, "parameters")[0]
        assert _part(config, "evaluator")["valueString"] == "fhirpathpy-1.2.3 (R5)"
        assert _part(config, "context")["valueString"] == "Patient"
        assert _part(config, "expression")["valueString"] == "name"
        assert _part(config, "resource")["resource"] == patient
        assert _part(config, "terminologyServerUrl")["valueString"] == "https://tx.example.org/r4"
        assert _part(config, "parseDebug")["valueString"] == "name\r\n"
        assert json.loads(_part(config, "parseDebugTree")["valueString"])["ExpressionType"] == "ChildExpression"

    def test_resource_id_wins_over_resource(self, formatter, patient):
        request = _request(patient, resource_id="https://example.org/Patient/1")
        config = _param(formatter.format_result(FhirPathResult(request=request)), "parameters")[0]
        assert _part(config, "resource") == {"name": "resource", "valueString": "https://example.org/Patient/1"}

    def test_expected_return_type(self, formatter, patient):
        analysis = AnalysisResult(inferred_types=[TypeInfo(name="HumanName", is_collection=True)])
        out = formatter.format_result(FhirPathResult(request=_request(patient), parsed_expression=_parsed(analysis)))
        config = _param(out, "parameters")[0]
        assert _part(config, "expectedReturnType")["valueString"] == "HumanName[]"
        assert json.loads(_part(config, "parseDebugTree")["valueString"])["ReturnType"] == "HumanName[]"
        assert "HumanName[]" in _part(config, "parseDebug")["valueString"]

    def test_debug_outcome(self, formatter, patient):
        issues = [ValidationIssue(severity="warning", message="Element 'foo' not found on type 'Patient'",
                                  location="Patient.foo")]
        parsed = _parsed(AnalysisResult(issues=issues), validation_issues=issues)
        config = _param(formatter.format_result(FhirPathResult(request=_request(patient), parsed_expression=parsed)),
                        "parameters")[0]
        outcome = _part(config, "debugOutcome")["resource"]
        assert outcome["resourceType"] == "OperationOutcome"
        assert outcome["issue"] == [{
            "severity": "warning",
            "code": "not-found",
            "diagnostics": "Element 'foo' not found on type 'Patient'",
            "expression": ["Patient.foo"],
        }]

    def test_analysis_error_adds_warning(self, formatter, patient):
        parsed = _parsed(analysis_error="model unavailable")
        out = formatter.format_result(FhirPathResult(request=_request(patient), parsed_expression=parsed))
        assert _param(out, "warning") == [{"name": "warning", "valueString": "Validation skipped: model unavailable"}]


class TestIssueCodes:
    @pytest.mark.parametrize("message, code", [
        ("Element 'x' not found", "not-found"),
        ("Unknown function 'foo'", "not-found"),
        ("Operator not supported here", "not-supported"),
        ("Invalid argument", "invalid"),
        ("Incorrect cardinality", "invalid"),
        ("Argument is required", "required"),
        ("Something else", "informational"),
    ])
    def test_code_from_message(self, message, code):
        assert issue_code(ValidationIssue(message=message)) == code

    def test_unknown_severity_becomes_information(self):
        outcome = validation_outcome([ValidationIssue(severity="hint", message="x")])
        assert outcome["issue"][0]["severity"] == "information"


class TestResultParameter:
    """Typed values inside `result` parameters."""

    def _format(self, formatter, patient, values, context_path="", trace=None):
        result = FhirPathResult(
            request=_request(patient),
            parsed_expression=_parsed(),
            results=[EvaluationResult(context_path=context_path, output_values=values, trace_output=trace or [])],
        )
        return _param(formatter.format_result(result), "result")[0]

    def test_single_item_arrays_stay_arrays(self, formatter, patient):
        """Test complex values keep their JSON shape, including one-element arrays."""
        result = self._format(formatter, patient, _names(patient))
        first, second = result["part"]
        assert first["name"] == "HumanName"
        assert first["valueHumanName"]["family"] == "Smith"
        assert second["valueHumanName"]["given"] == ["Johnny"]
        assert isinstance(second["valueHumanName"]["given"], list)

    def test_resource_path_extensions(self, formatter, patient):
        result = self._format(formatter, patient, _names(patient))
        paths = [p["extension"][0] for p in result["part"]]
        assert paths == [
            {"url": EXTENSION_URL_RESOURCE_PATH, "valueString": "Patient.name[0]"},
            {"url": EXTENSION_URL_RESOURCE_PATH, "valueString": "Patient.name[1]"},
        ]

    def test_primitive_values(self, formatter, patient):
        values = [
            Element(value="Smith", instance_type="string"),
            Element(value=2, instance_type="integer"),
            Element(value=Decimal("1.5"), instance_type="decimal"),
            Element(value=True, instance_type="boolean"),
            Element(value="1990-01-15", instance_type="date"),
        ]
        parts = self._format(formatter, patient, values)["part"]
        assert parts[0] == {"name": "string", "valueString": "Smith"}
        assert parts[1] == {"name": "integer", "valueInteger": 2}
        assert parts[2] == {"name": "decimal", "valueDecimal": Decimal("1.5")}
        assert parts[3] == {"name": "boolean", "valueBoolean": True}
        assert parts[4] == {"name": "date", "valueDate": "1990-01-15"}

    def test_resources_use_the_resource_slot(self, formatter, patient):
        values = [Element(value=patient, instance_type="Patient", location="Patient", is_resource=True)]
        part = self._format(formatter, patient, values)["part"][0]
        assert part["name"] == "Patient"
        assert part["resource"] is patient

    def test_untyped_values_use_json_value_extension(self, formatter, patient):
        part = self._format(formatter, patient, [Element(value={"a": [1]})])["part"][0]
        assert part["name"] == "(null)"
        assert part["extension"] == [{"url": EXTENSION_URL_JSON_VALUE, "valueString": '{"a": [1]}'}]

    def test_context_path(self, formatter, patient):
        assert self._format(formatter, patient, [], "Patient.name[0]")["valueString"] == "Patient.name[0]"
        assert "valueString" not in self._format(formatter, patient, [])

    def test_trace_parts(self, formatter, patient):
        trace = [TraceEntry(name="names", focus=_names(patient)[:1])]
        result = self._format(formatter, patient, [Element(value=1, instance_type="integer")], trace=trace)
        trace_part = result["part"][-1]
        assert trace_part["name"] == "trace"
        assert trace_part["valueString"] == "names"
        assert trace_part["part"][0]["valueHumanName"] is patient["name"][0]

    def test_untyped_trace_elements_have_an_empty_name(self, formatter, patient):
        """Test traced values without a type are named with an empty string, unlike result values."""
        trace = [TraceEntry(name="raw", focus=[Element(value={"a": 1})])]
        result = self._format(formatter, patient, [Element(value={"b": 2})], trace=trace)
        value_part, trace_part = result["part"]
        assert value_part["name"] == "(null)"
        assert trace_part["part"][0]["name"] == ""
        assert trace_part["part"][0]["extension"] == [{"url": EXTENSION_URL_JSON_VALUE, "valueString": '{"a": 1}'}]


class TestDebugTrace:
    """debug-trace entries nest under one wrapper parameter per context."""

    def test_entries_are_grouped_by_key(self, formatter, patient):
        entries = [
            NodeEvaluationEntry(position=0, length=4, name="name", results=_names(patient)),
            NodeEvaluationEntry(position=5, length=6, name="family",
                                results=[Element(value="Smith", instance_type="string")],
                                focus_elements=_names(patient)),
            NodeEvaluationEntry(position=5, length=6, name="family",
                                this_element=_names(patient)[1], index=1),
        ]
        result = FhirPathResult(
            request=_request(patient),
            parsed_expression=_parsed(),
            results=[EvaluationResult(debug_trace_entries=entries)],
        )
        out = formatter.format_result(result)
        assert [p["name"] for p in out["parameter"]] == ["parameters", "result", "debug-trace"]

        wrapper = out["parameter"][-1]
        assert [p["name"] for p in wrapper["part"]] == ["0,4,name", "5,6,family"]
        name_entry, family_entry = wrapper["part"]
        assert name_entry["part"] == [
            {"name": "resource-path", "valueString": "Patient.name[0]"},
            {"name": "resource-path", "valueString": "Patient.name[1]"},
        ]
        assert family_entry["part"] == [
            {"name": "focus-resource-path", "valueString": "Patient.name[0]"},
            {"name": "focus-resource-path", "valueString": "Patient.name[1]"},
            {"name": "this-resource-path", "valueString": "Patient.name[1]"},
            {"name": "index", "valueInteger": 1},
        ]

    def test_no_entries_no_parameter(self, formatter, patient):
        result = FhirPathResult(request=_request(patient), parsed_expression=_parsed(),
                                results=[EvaluationResult()])
        assert _param(formatter.format_result(result), "debug-trace") == []
