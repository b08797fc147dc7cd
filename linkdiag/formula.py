"""
Port-index formulas for switch-side optical OIDs.

Operators describe how a switch numbers its transceiver table with a small
arithmetic template, e.g. ``({slot}-1)*64 + {port}``. Placeholders are
substituted with integers parsed from the port string and the expression is
evaluated by a tokenizer + recursive-descent parser that only knows integer
literals, ``+ - * /`` and parentheses. Division is exact (fractions); the
final result is floored.

Grammar:
    expr   := term (("+" | "-") term)*
    term   := factor (("*" | "/") factor)*
    factor := ("+" | "-") factor | INT | "(" expr ")"
"""

import math
import re
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional

from linkdiag.errors import FormulaError

_TOKEN_RE = re.compile(r"\s*(?:(\d+)|(.))")
_PLACEHOLDER_RE = re.compile(r"\{(slot|module|port)\}", re.IGNORECASE)
_TRAILING_DIGITS_RE = re.compile(r"(\d+)\D*$")


@dataclass(frozen=True)
class Token:
    kind: str  # "int", "op", "end"
    value: str


def tokenize(expression: str) -> list[Token]:
    tokens = []
    for number, symbol in _TOKEN_RE.findall(expression.strip()):
        if number:
            tokens.append(Token("int", number))
        elif symbol in "+-*/()":
            tokens.append(Token("op", symbol))
        else:
            raise FormulaError(f"unexpected character {symbol!r} in formula {expression!r}")
    tokens.append(Token("end", ""))
    return tokens


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.pos = 0

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self) -> Fraction:
        value = self._expr()
        if self._peek().kind != "end":
            raise FormulaError(f"trailing input at {self._peek().value!r} in {self.expression!r}")
        return value

    def _expr(self) -> Fraction:
        value = self._term()
        while self._peek().value in ("+", "-") and self._peek().kind == "op":
            op = self._advance().value
            rhs = self._term()
            value = value + rhs if op == "+" else value - rhs
        return value

    def _term(self) -> Fraction:
        value = self._factor()
        while self._peek().value in ("*", "/") and self._peek().kind == "op":
            op = self._advance().value
            rhs = self._factor()
            if op == "*":
                value = value * rhs
            else:
                if rhs == 0:
                    raise FormulaError(f"division by zero in {self.expression!r}")
                value = value / rhs
        return value

    def _factor(self) -> Fraction:
        token = self._advance()
        if token.kind == "int":
            return Fraction(int(token.value))
        if token.kind == "op" and token.value in ("+", "-"):
            operand = self._factor()
            return operand if token.value == "+" else -operand
        if token.kind == "op" and token.value == "(":
            value = self._expr()
            closing = self._advance()
            if closing.value != ")":
                raise FormulaError(f"missing ')' in {self.expression!r}")
            return value
        raise FormulaError(f"unexpected {token.value or 'end of formula'!r} in {self.expression!r}")


def evaluate(expression: str) -> int:
    """Evaluate an integer arithmetic expression and floor the result."""
    if not expression or not expression.strip():
        raise FormulaError("empty formula")
    return math.floor(_Parser(expression).parse())


def parse_switch_port(port: str) -> tuple[int, int, int]:
    """Split a switch port string into (slot, module, port).

    "49" -> (0, 0, 49); "1/49" -> (1, 0, 49); "1/1/49" -> (1, 1, 49).
    Interface-name prefixes such as "Ethernet" or "xe-" are ignored.
    """
    parts = [int(p) for p in re.findall(r"\d+", port or "")]
    if not parts:
        raise FormulaError(f"no port number in {port!r}")
    if len(parts) == 1:
        return 0, 0, parts[0]
    if len(parts) == 2:
        return parts[0], 0, parts[1]
    return parts[-3], parts[-2], parts[-1]


def calculate_switch_port_index(formula: Optional[str], switch_port: str) -> int:
    """Turn a switch port string into the instance index used in OID templates.

    Without a formula the trailing number of the port string is used.
    """
    if not formula or not formula.strip():
        match = _TRAILING_DIGITS_RE.search(switch_port or "")
        if not match:
            raise FormulaError(f"no port number in {switch_port!r}")
        return int(match.group(1))

    slot, module, port = parse_switch_port(switch_port)
    values = {"slot": slot, "module": module, "port": port}
    expression = _PLACEHOLDER_RE.sub(lambda m: str(values[m.group(1).lower()]), formula)
    return evaluate(expression)
