"""Tests for the parse debug tree and expression text rendering."""

import json

from fhirpath_lab import expressions as ex
from fhirpath_lab.ast_json import (
    expression_to_debug_text, expression_to_json_ast, expression_to_text, return_type,
)
from fhirpath_lab.expressions import Expression
from fhirpath_lab.models import AnalysisResult, TypeInfo


def _located(kind, name, position, length, **fields):
    return Expression(kind=kind, name=name, position=position, length=length, line=1, column=position + 1, **fields)


def _name_family():
    """name.family with ids 0 (family) and 1 (name)."""
    name = _located(ex.CHILD, "name", 0, 4, node_id=1)
    return _located(ex.CHILD, "family", 5, 6, focus=name, node_id=0)


class TestReturnType:
    def test_collection_suffix(self):
        assert return_type([TypeInfo(name="HumanName", is_collection=True)]) == "HumanName[]"

    def test_names_are_joined(self):
        types = [TypeInfo(name="string"), TypeInfo(name="code"), TypeInfo(name="string")]
        assert return_type(types) == "string, code"
        assert return_type(types, " | ") == "string | code"

    def test_never_a_bare_collection_marker(self):
        """Test a collection without a type name produces no return type at all."""
        assert return_type([TypeInfo(name="", is_collection=True)]) is None
        assert return_type([]) is None
        assert return_type(None) is None


class TestJsonAst:
    """Node shape of parseDebugTree."""

    def test_child_chain_with_scope_injection(self):
        tree = json.loads(expression_to_json_ast(_name_family(), None, "Patient"))
        assert tree["ExpressionType"] == "ChildExpression"
        assert tree["Name"] == "family"
        assert (tree["Position"], tree["Length"], tree["Line"], tree["Column"]) == (5, 6, 1, 6)
        focus = tree["Arguments"][0]
        assert focus["Name"] == "name"
        assert focus["Arguments"] == [{"ExpressionType": "AxisExpression", "Name": "builtin.that",
                                       "ReturnType": "Patient"}]

    def test_scope_without_root_type(self):
        tree = json.loads(expression_to_json_ast(_located(ex.CHILD, "name", 0, 4)))
        assert tree["Arguments"][0]["ReturnType"] == ""

    def test_return_types_from_analysis(self):
        analysis = AnalysisResult(
            inferred_types=[TypeInfo(name="string", is_collection=True)],
            node_types={
                0: [TypeInfo(name="string", is_collection=True)],
                1: [TypeInfo(name="HumanName", is_collection=True)],
            },
        )
        tree = json.loads(expression_to_json_ast(_name_family(), analysis, "Patient"))
        assert tree["ReturnType"] == "string[]"
        assert tree["Arguments"][0]["ReturnType"] == "HumanName[]"

    def test_root_types_are_joined_with_pipes(self):
        analysis = AnalysisResult(inferred_types=[TypeInfo(name="date"), TypeInfo(name="string", is_collection=True)])
        tree = json.loads(expression_to_json_ast(_name_family(), analysis))
        assert tree["ReturnType"] == "date | string[]"

    def test_no_bare_return_type_anywhere(self):
        analysis = AnalysisResult(
            inferred_types=[TypeInfo(name="", is_collection=True)],
            node_types={0: [TypeInfo(name="", is_collection=True)], 1: []},
        )
        text = expression_to_json_ast(_name_family(), analysis)
        assert '"[]"' not in text.replace('"Name": "[]"', "")
        assert "ReturnType" not in json.loads(text)

    def test_function_call_arguments(self):
        """Test the focus comes first, then the call arguments."""
        arg = Expression(kind=ex.CONSTANT, name="J", value="J", value_type="string")
        call = Expression(kind=ex.FUNCTION, name="startsWith", arguments=[arg])
        tree = json.loads(expression_to_json_ast(call, None, "string"))
        assert tree["ExpressionType"] == "FunctionCallExpression"
        assert [a["ExpressionType"] for a in tree["Arguments"]] == ["AxisExpression", "ConstantExpression"]
        assert tree["Arguments"][1]["ReturnType"] == "string"

    def test_other_node_kinds(self):
        quantity = Expression(kind=ex.QUANTITY, name="5 'mg'", value=5, unit="mg")
        variable = Expression(kind=ex.VARIABLE, name="resource")
        scope = Expression(kind=ex.SCOPE, name="this")
        indexer = Expression(kind=ex.INDEXER, name="[]", arguments=[variable, quantity])
        binary = Expression(kind=ex.BINARY, name="=", arguments=[scope, indexer])
        tree = json.loads(expression_to_json_ast(binary))

        assert (tree["ExpressionType"], tree["Name"]) == ("Binary", "=")
        left, right = tree["Arguments"]
        assert (left["ExpressionType"], left["Name"]) == ("AxisExpression", "builtin.this")
        assert (right["ExpressionType"], right["Name"]) == ("Indexer", "[]")
        assert right["Arguments"][0] == {"ExpressionType": "VariableRefExpression", "Name": "resource"}
        assert right["Arguments"][1]["Name"] == "5 'mg'"
        assert right["Arguments"][1]["ReturnType"] == "Quantity"


class TestExpressionText:
    def test_round_trip_of_common_shapes(self):
        official = Expression(kind=ex.CONSTANT, name="official", value="official", value_type="string")
        condition = Expression(kind=ex.BINARY, name="=", arguments=[Expression(kind=ex.CHILD, name="use"), official])
        where = Expression(kind=ex.FUNCTION, name="where", focus=Expression(kind=ex.CHILD, name="name"),
                           arguments=[condition])
        expr = Expression(kind=ex.CHILD, name="family", focus=where)
        assert expression_to_text(expr) == "name.where(use = 'official').family"

    def test_literals_and_scopes(self):
        assert expression_to_text(Expression(kind=ex.CONSTANT, name="it's", value="it's",
                                             value_type="string")) == "'it\\'s'"
        assert expression_to_text(Expression(kind=ex.CONSTANT, name="true", value=True,
                                             value_type="boolean")) == "true"
        assert expression_to_text(Expression(kind=ex.SCOPE, name="index")) == "$index"
        assert expression_to_text(Expression(kind=ex.VARIABLE, name="ucum")) == "%ucum"
        assert expression_to_text(Expression(kind=ex.EMPTY, name="{}")) == "{}"

    def test_debug_text(self):
        analysis = AnalysisResult(inferred_types=[TypeInfo(name="HumanName", is_collection=True)])
        assert expression_to_debug_text(Expression(kind=ex.CHILD, name="name"), analysis) == "name : HumanName[]\r\n"
        assert expression_to_debug_text(Expression(kind=ex.CHILD, name="name")) == "name\r\n"
