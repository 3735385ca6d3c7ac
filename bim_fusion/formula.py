"""
formula.py — Calculated columns.

A formula such as ``[Volume] * 2 + [Unit Cost]`` references other columns by
``[Name]``.  Each reference is replaced by the record's numeric value, the
resulting string is checked against a whitelist and then evaluated by a small
recursive-descent parser:

    expr   := term   (('+' | '-') term)*
    term   := factor (('*' | '/') factor)*
    factor := ('+' | '-') factor | NUMBER | '(' expr ')'

Nothing is ever handed to ``eval``; a formula that fails any step yields None.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Optional

from bim_fusion.records import Attributes, Calculation, parse_float

log = logging.getLogger(__name__)

_TOKEN_REF_RE = re.compile(r"\[([^\[\]]+)\]")
_ALLOWED_RE = re.compile(r"^[\d+\-*/().\s]*$")
_LEXER_RE = re.compile(r"\s*(?:(\d+\.?\d*|\.\d+)|(.))")


class FormulaError(ValueError):
    """Raised for a formula that cannot be reduced to a number."""


# ── Parser ────────────────────────────────────────────────────────────────────

def _tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _LEXER_RE.match(text, pos)
        if not m:
            raise FormulaError(f"Unexpected input at {pos}")
        number, symbol = m.groups()
        tok = number if number is not None else symbol
        if tok not in ("+", "-", "*", "/", "(", ")") and number is None:
            raise FormulaError(f"Unexpected character {tok!r}")
        tokens.append(tok)
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[str]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> str:
        tok = self.peek()
        if tok is None:
            raise FormulaError("Unexpected end of expression")
        self.pos += 1
        return tok

    def parse(self) -> float:
        if not self.tokens:
            raise FormulaError("Empty expression")
        value = self.expr()
        if self.peek() is not None:
            raise FormulaError(f"Unexpected token {self.peek()!r}")
        return value

    def expr(self) -> float:
        value = self.term()
        while self.peek() in ("+", "-"):
            if self.take() == "+":
                value += self.term()
            else:
                value -= self.term()
        return value

    def term(self) -> float:
        value = self.factor()
        while self.peek() in ("*", "/"):
            op = self.take()
            rhs = self.factor()
            if op == "*":
                value *= rhs
            else:
                if rhs == 0:
                    raise FormulaError("Division by zero")
                value /= rhs
        return value

    def factor(self) -> float:
        tok = self.take()
        if tok == "+":
            return self.factor()
        if tok == "-":
            return -self.factor()
        if tok == "(":
            value = self.expr()
            if self.take() != ")":
                raise FormulaError("Missing closing parenthesis")
            return value
        if tok in ("*", "/", ")"):
            raise FormulaError(f"Unexpected token {tok!r}")
        return float(tok)


def evaluate_arithmetic(expression: str) -> float:
    """Evaluate a restricted arithmetic string. Raises FormulaError."""
    if not _ALLOWED_RE.match(expression):
        raise FormulaError("Expression contains disallowed characters")
    return _Parser(_tokenize(expression)).parse()


# ── Substitution ─────────────────────────────────────────────────────────────

def referenced_columns(formula: str) -> list[str]:
    """Column names referenced by ``[Name]`` tokens, in order of appearance."""
    seen: list[str] = []
    for name in _TOKEN_REF_RE.findall(formula or ""):
        if name not in seen:
            seen.append(name)
    return seen


def _format_number(value: float) -> str:
    # positional notation only; "1e-05" would trip the whitelist
    text = format(Decimal(repr(value)), "f")
    return f"({text})" if text.startswith("-") else text


def substitute(formula: str, attributes: Attributes) -> str:
    """Replace every ``[Name]`` with the attribute's numeric value (missing → 0)."""
    def _repl(m: re.Match) -> str:
        num = parse_float(attributes.get(m.group(1)))
        return _format_number(num if num is not None else 0.0)

    return _TOKEN_REF_RE.sub(_repl, formula)


def evaluate_calculation(formula: str, attributes: Attributes) -> Optional[float]:
    """
    Evaluate one formula against one record.

    Returns the value rounded to 2 decimals, or None when the substituted
    expression is not pure arithmetic or cannot be evaluated.
    """
    expression = substitute(formula, attributes)
    try:
        return round(evaluate_arithmetic(expression), 2)
    except FormulaError as exc:
        log.debug("Formula %r → None (%s)", formula, exc)
        return None


def apply_calculations(attributes: Attributes, calculations: list[Calculation]) -> Attributes:
    """Evaluate *calculations* in order, writing each result into *attributes*."""
    for calc in calculations:
        attributes[calc.name] = evaluate_calculation(calc.formula, attributes)
    return attributes


def validate_calculations(calculations: list[Calculation]) -> list[str]:
    """
    Return a list of error strings.  Empty list = valid.

    Names must be non-blank and unique; formulas must be non-blank.
    """
    errors: list[str] = []
    seen: set[str] = set()
    for i, calc in enumerate(calculations):
        name = (calc.name or "").strip()
        if not name:
            errors.append(f"calculations[{i}]: name must be a non-empty string")
        elif name in seen:
            errors.append(f"calculations[{i}]: duplicate name '{name}'")
        seen.add(name)
        if not (calc.formula or "").strip():
            errors.append(f"calculations[{i}]: formula must be a non-empty string")
    return errors
