"""Arithmetic calculator restricted to numeric expressions."""

from __future__ import annotations

import ast
import operator
import re
from typing import Any

from pydantic import BaseModel, Field

from core.errors import ToolExecutionError, ToolValidationError
from tools.base_tool import BaseTool

_ALLOWED_CHARS = re.compile(r"^[0-9+\-*/%.()\s]+$")

_BINARY = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY = {ast.UAdd: operator.pos, ast.USub: operator.neg}


class CalculatorParams(BaseModel):
    expression: str = Field(description="Arithmetic expression, e.g. '(2 + 3) * 4'")


def _evaluate(node: ast.AST) -> float | int:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 64:
            raise ToolValidationError("calculator: exponent too large")
        return _BINARY[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY:
        return _UNARY[type(node.op)](_evaluate(node.operand))
    raise ToolValidationError(f"calculator: unsupported syntax {type(node).__name__}")


class CalculatorTool(BaseTool):
    name = "calculator"
    description = (
        "Evaluate an arithmetic expression with + - * / % ** and parentheses. "
        "Returns {expression, result}."
    )
    parameter_schema = CalculatorParams
    keywords = ("calculate", "compute", "add", "subtract", "multiply", "divide", "sum", "math")

    def _run(self, params: CalculatorParams) -> dict[str, Any]:
        expression = params.expression.strip()
        if not expression or not _ALLOWED_CHARS.match(expression):
            raise ToolValidationError("calculator: only numbers, operators and parentheses allowed")
        try:
            tree = ast.parse(expression, mode="eval")
        except SyntaxError as exc:
            raise ToolValidationError(f"calculator: malformed expression ({exc.msg})") from exc
        try:
            result = _evaluate(tree)
        except ZeroDivisionError as exc:
            raise ToolExecutionError("calculator: division by zero") from exc
        if isinstance(result, float) and result.is_integer():
            result = int(result)
        return {"expression": expression, "result": result}
