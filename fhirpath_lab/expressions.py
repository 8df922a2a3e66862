"""
Expression tree for FHIRPath source text.

`parse` runs the FHIRPath grammar shipped with fhirpathpy (with an error
listener that rejects any syntax error) and folds the ANTLR parse tree into a
small node taxonomy (child access, function calls, operators, literals, ...)
that the analyzer, the debug-tree serializer and the debug trace walk over.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterator, List, Optional, Tuple

from antlr4 import CommonTokenStream, InputStream
from antlr4.error.ErrorListener import ErrorListener
from antlr4.error.Errors import RecognitionException
from antlr4.tree.Tree import TerminalNode
from fhirpathpy.parser.generated.FHIRPathLexer import FHIRPathLexer
from fhirpathpy.parser.generated.FHIRPathParser import FHIRPathParser
from pydantic import BaseModel, Field

# ---------- Node kinds ----------
CONSTANT = "Constant"
QUANTITY = "Quantity"
EMPTY = "Empty"
VARIABLE = "Variable"
SCOPE = "Scope"
CHILD = "Child"
FUNCTION = "FunctionCall"
INDEXER = "Indexer"
UNARY = "Unary"
BINARY = "Binary"
PARENTHESIZED = "Parenthesized"
TYPE_SPECIFIER = "TypeSpecifier"

BINARY_CONTEXTS = (
    FHIRPathParser.MultiplicativeExpressionContext, FHIRPathParser.AdditiveExpressionContext,
    FHIRPathParser.UnionExpressionContext, FHIRPathParser.InequalityExpressionContext,
    FHIRPathParser.EqualityExpressionContext, FHIRPathParser.MembershipExpressionContext,
    FHIRPathParser.AndExpressionContext, FHIRPathParser.OrExpressionContext,
    FHIRPathParser.ImpliesExpressionContext,
)
SCOPE_CONTEXTS = (
    (FHIRPathParser.ThisInvocationContext, "this"),
    (FHIRPathParser.IndexInvocationContext, "index"),
    (FHIRPathParser.TotalInvocationContext, "total"),
)

_ESCAPES = {"'": "'", '"': '"', "`": "`", "\\": "\\", "/": "/", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}
_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)")


class ExpressionSyntaxError(ValueError):
    """Raised when the FHIRPath parser rejects an expression."""


class Expression(BaseModel):
    """
    One node of a parsed expression.

    Operands live in `arguments`: Binary -> [left, right], Unary -> [operand],
    Indexer -> [collection, index], Parenthesized -> [inner], FunctionCall -> call
    arguments. Child and FunctionCall keep their navigation source in `focus`.
    """
    kind: str
    name: str = ""
    value: Any = None
    value_type: Optional[str] = None
    unit: Optional[str] = None
    focus: Optional["Expression"] = None
    arguments: List["Expression"] = Field(default_factory=list)
    node_id: int = 0
    position: Optional[int] = None
    length: Optional[int] = None
    line: Optional[int] = None
    column: Optional[int] = None

    def children(self) -> List["Expression"]:
        out: List[Expression] = []
        if self.focus is not None:
            out.append(self.focus)
        out.extend(self.arguments)
        return out

    def walk(self) -> Iterator["Expression"]:
        """Pre-order traversal of this node and everything below it."""
        yield self
        for child in self.children():
            yield from child.walk()

    @property
    def is_located(self) -> bool:
        return self.position is not None and self.length is not None


Expression.model_rebuild()


# ---------- Helpers ----------
def unescape(text: str) -> str:
    def _sub(m: "re.Match[str]") -> str:
        code = m.group(1)
        if len(code) == 5 and code[0] == "u":
            return chr(int(code[1:], 16))
        return _ESCAPES.get(code, code)
    return _ESCAPE_RE.sub(_sub, text)


def unquote_identifier(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "`'\"":
        return unescape(text[1:-1])
    return text


def number_value(text: str) -> Any:
    if text.endswith("L"):
        text = text[:-1]
    if "." in text:
        try:
            return Decimal(text)
        except InvalidOperation:
            return text
    return int(text)


class _RaisingErrorListener(ErrorListener):
    def syntaxError(self, recognizer, offendingSymbol, line, column, msg, e):
        raise ExpressionSyntaxError(f"{msg} (line {line}, column {column + 1})")


def _span(ctx: Any) -> Optional[Tuple[int, int]]:
    """Start and end (exclusive) character offsets of a rule context or terminal."""
    symbol = getattr(ctx, "symbol", None)
    if symbol is not None:
        return symbol.start, symbol.stop + 1
    start, stop = getattr(ctx, "start", None), getattr(ctx, "stop", None)
    if start is None or stop is None or stop.stop < start.start:
        return None
    return start.start, stop.stop + 1


def _operator(ctx: Any) -> str:
    """Text of the first terminal child (the operator of a binary or unary rule)."""
    for child in ctx.getChildren():
        if isinstance(child, TerminalNode):
            return child.getText()
    return ""


# ---------- Tree conversion ----------
class _TreeConverter:
    """Folds the ANTLR parse tree into `Expression` nodes located by token offsets."""

    def __init__(self, source: str):
        self.source = source

    def _node(self, kind: str, ctx: Any, **fields: Any) -> Expression:
        expr = Expression(kind=kind, **fields)
        span = _span(ctx) if ctx is not None else None
        if span:
            expr.position = span[0]
            expr.length = span[1] - span[0]
            token = getattr(ctx, "symbol", None) or ctx.start
            expr.line, expr.column = token.line, token.column + 1
        return expr

    def convert(self, ctx: Any) -> Expression:
        if isinstance(ctx, FHIRPathParser.EntireExpressionContext):
            return self.convert(ctx.expression())
        if isinstance(ctx, FHIRPathParser.TermExpressionContext):
            return self.term(ctx.term())
        if isinstance(ctx, FHIRPathParser.InvocationExpressionContext):
            focus = self.convert(ctx.expression())
            invocation = self.invocation(ctx.invocation())
            if invocation.kind in (CHILD, FUNCTION):
                invocation.focus = focus
                return invocation
            # $this/$index/$total after a dot keep the dotted form
            return self._node(BINARY, ctx, name=".", arguments=[focus, invocation])
        if isinstance(ctx, FHIRPathParser.IndexerExpressionContext):
            collection, index = (self.convert(e) for e in ctx.expression())
            return self._node(INDEXER, ctx, name="[]", arguments=[collection, index])
        if isinstance(ctx, FHIRPathParser.PolarityExpressionContext):
            return self._node(UNARY, ctx, name=_operator(ctx), arguments=[self.convert(ctx.expression())])
        if isinstance(ctx, FHIRPathParser.TypeExpressionContext):
            left = self.convert(ctx.expression())
            spec = ctx.typeSpecifier()
            right = self._node(TYPE_SPECIFIER, spec, name=spec.getText())
            return self._node(BINARY, ctx, name=_operator(ctx), arguments=[left, right])
        if isinstance(ctx, BINARY_CONTEXTS):
            left, right = (self.convert(e) for e in ctx.expression())
            return self._node(BINARY, ctx, name=_operator(ctx), arguments=[left, right])
        raise ExpressionSyntaxError(f"Unsupported expression '{ctx.getText()}'")

    def term(self, ctx: Any) -> Expression:
        if isinstance(ctx, FHIRPathParser.InvocationTermContext):
            return self.invocation(ctx.invocation())
        if isinstance(ctx, FHIRPathParser.LiteralTermContext):
            return self.literal(ctx.literal())
        if isinstance(ctx, FHIRPathParser.ExternalConstantTermContext):
            constant = ctx.externalConstant()
            name = constant.identifier().getText() if constant.identifier() is not None else constant.STRING().getText()
            return self._node(VARIABLE, constant, name=unquote_identifier(name))
        if isinstance(ctx, FHIRPathParser.ParenthesizedTermContext):
            return self._node(PARENTHESIZED, ctx, name="()", arguments=[self.convert(ctx.expression())])
        raise ExpressionSyntaxError(f"Unsupported term '{ctx.getText()}'")

    def invocation(self, ctx: Any) -> Expression:
        if isinstance(ctx, FHIRPathParser.MemberInvocationContext):
            return self._node(CHILD, ctx, name=unquote_identifier(ctx.identifier().getText()))
        if isinstance(ctx, FHIRPathParser.FunctionInvocationContext):
            function = ctx.functn()
            params = function.paramList()
            arguments = [self.convert(e) for e in params.expression()] if params is not None else []
            return self._node(FUNCTION, ctx, name=unquote_identifier(function.identifier().getText()),
                              arguments=arguments)
        for context_class, name in SCOPE_CONTEXTS:
            if isinstance(ctx, context_class):
                return self._node(SCOPE, ctx, name=name)
        raise ExpressionSyntaxError(f"Unsupported invocation '{ctx.getText()}'")

    def literal(self, ctx: Any) -> Expression:
        text = ctx.getText()
        if isinstance(ctx, FHIRPathParser.NullLiteralContext):
            return self._node(EMPTY, ctx, name="{}")
        if isinstance(ctx, FHIRPathParser.BooleanLiteralContext):
            return self._node(CONSTANT, ctx, name=text, value=(text == "true"), value_type="boolean")
        if isinstance(ctx, FHIRPathParser.StringLiteralContext):
            value = unescape(text[1:-1])
            return self._node(CONSTANT, ctx, name=value, value=value, value_type="string")
        if isinstance(ctx, FHIRPathParser.NumberLiteralContext):
            value = number_value(text)
            return self._node(CONSTANT, ctx, name=text, value=value,
                              value_type="integer" if isinstance(value, int) else "decimal")
        if isinstance(ctx, FHIRPathParser.TimeLiteralContext):
            return self._node(CONSTANT, ctx, name=text, value=text, value_type="time")
        if isinstance(ctx, FHIRPathParser.DateTimeLiteralContext):
            value_type = "dateTime" if "T" in text else "date"
            return self._node(CONSTANT, ctx, name=text, value=text, value_type=value_type)
        if isinstance(ctx, FHIRPathParser.QuantityLiteralContext):
            quantity = ctx.quantity()
            number = quantity.NUMBER().getText()
            unit = quantity.unit().getText() if quantity.unit() is not None else ""
            unit = unquote_identifier(unit) if unit.startswith("'") else unit
            name = f"{number} {quantity.unit().getText()}" if unit else number
            return self._node(QUANTITY, ctx, name=name, value=number_value(number), unit=unit or None)
        raise ExpressionSyntaxError(f"Unsupported literal '{text}'")


def parse(text: str) -> Expression:
    """Parse FHIRPath source into an `Expression` tree with source locations."""
    if not text or not text.strip():
        raise ExpressionSyntaxError("Expression is empty")

    listener = _RaisingErrorListener()
    lexer = FHIRPathLexer(InputStream(text))
    lexer.removeErrorListeners()
    lexer.addErrorListener(listener)
    parser = FHIRPathParser(CommonTokenStream(lexer))
    parser.removeErrorListeners()
    parser.addErrorListener(listener)

    try:
        tree = parser.entireExpression()
    except ExpressionSyntaxError:
        raise
    except RecognitionException as e:
        raise ExpressionSyntaxError(str(e) or e.__class__.__name__) from e

    expr = _TreeConverter(text).convert(tree)
    for node_id, node in enumerate(expr.walk()):
        node.node_id = node_id
    return expr
