from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from fhirpath_lab.expressions import Expression


# ---------- Request ----------
class FhirPathRequest(BaseModel):
    """Input parameters of one `$fhirpath` evaluation."""
    resource: Optional[Dict[str, Any]] = Field(None, description="FHIR resource JSON to evaluate against.")
    resource_id: Optional[str] = Field(None, description="Reference or URL given instead of an inline resource.")
    context: Optional[str] = Field(None, description="Expression selecting the context nodes within the resource.")
    expression: str = Field("", description="The FHIRPath expression to evaluate.")
    terminology_server_url: Optional[str] = Field(None, description="Terminology server echoed back to the UI.")
    variables: Optional[Dict[str, Any]] = Field(None, description="The `variables` parameter (name/part list).")
    debug_trace: bool = Field(False, description="Include per-node debug trace output.")
    fhir_version: str = Field("R4", description="FHIR version to evaluate with (STU3, R4, R4B, R5, R6).")


# ---------- Analysis ----------
class TypeInfo(BaseModel):
    name: str
    is_collection: bool = False
    element_path: Optional[str] = Field(None, description="Element path used to look up anonymous (backbone) types.")

    def __str__(self) -> str:
        if self.is_collection and self.name:
            return f"{self.name}[]"
        return self.name


class ValidationIssue(BaseModel):
    severity: str = Field("warning", description="error | warning | information")
    message: str
    location: Optional[str] = None


class AnalysisResult(BaseModel):
    inferred_types: List[TypeInfo] = Field(default_factory=list)
    node_types: Dict[int, List[TypeInfo]] = Field(default_factory=dict)
    issues: List[ValidationIssue] = Field(default_factory=list)


class ParsedExpression(BaseModel):
    """Result of parsing and analyzing a FHIRPath expression."""
    expression: Expression
    analysis: Optional[AnalysisResult] = None
    validation_issues: Optional[List[ValidationIssue]] = None
    expression_scope_type: Optional[str] = None
    analysis_error: Optional[str] = None


# ---------- Evaluation ----------
class Element(BaseModel):
    """One evaluator output item with the type and location the UI shows."""
    value: Any = None
    instance_type: Optional[str] = None
    location: Optional[str] = None
    is_resource: bool = False

    @property
    def has_primitive_value(self) -> bool:
        return self.value is not None and not isinstance(self.value, (dict, list))


class TraceEntry(BaseModel):
    name: str
    focus: List[Element] = Field(default_factory=list)


class NodeEvaluationEntry(BaseModel):
    """Results of one located node of the expression, for the debug trace."""
    position: int
    length: int
    name: str
    results: List[Element] = Field(default_factory=list)
    focus_elements: List[Element] = Field(default_factory=list)
    this_element: Optional[Element] = None
    index: Optional[int] = None

    def key(self) -> str:
        return f"{self.position},{self.length},{self.name}"


class EvaluationResult(BaseModel):
    """Result of evaluating the expression against a single context."""
    context_path: str = ""
    output_values: List[Element] = Field(default_factory=list)
    trace_output: List[TraceEntry] = Field(default_factory=list)
    debug_trace_entries: List[NodeEvaluationEntry] = Field(default_factory=list)
    error: Optional[str] = None


class FhirPathResult(BaseModel):
    """Complete result of a FHIRPath evaluation request."""
    request: FhirPathRequest
    parsed_expression: Optional[ParsedExpression] = None
    context_expression: Optional[Expression] = None
    results: List[EvaluationResult] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: str = "invalid"
    error_diagnostics: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.error is None
