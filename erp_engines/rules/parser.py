"""
erp_engines.rules.parser -- Tokenizer and recursive-descent parser.

Responsibility:
    Turns rule expression text into the node tree of
    ``erp_engines.rules.nodes``.  This is the only accepted grammar; a rule
    condition, an action expression, a decision-table cell and a user
    function body all go through ``parse_expression``.

Grammar (EBNF; keywords are case-insensitive):

    expression     = or_expr ;
    or_expr        = and_expr , { "or" , and_expr } ;
    and_expr       = not_expr , { "and" , not_expr } ;
    not_expr       = "not" , not_expr | comparison ;
    comparison     = additive , [ comp_op , additive ] ;
    comp_op        = "=" | "==" | "!=" | "<>" | "≠" | "<" | "<=" | "≤"
                   | ">" | ">=" | "≥" | "in" | "not" , "in" | "matches" ;
    additive       = multiplicative , { ( "+" | "-" ) , multiplicative } ;
    multiplicative = unary , { ( "*" | "/" | "%" ) , unary } ;
    unary          = "-" , unary | postfix ;
    postfix        = primary , { "." , IDENT | "[" , expression , "]" } ;
    primary        = NUMBER | STRING | "true" | "false" | "null"
                   | "$" , IDENT
                   | IDENT , "(" , [ arguments ] , ")"
                   | IDENT , { "." , IDENT }
                   | "(" , expression , ")"
                   | "[" , [ arguments ] , "]" ;
    arguments      = expression , { "," , expression } ;

    NUMBER = digits , [ "." , digits ] ;          (parsed as Decimal)
    STRING = '"' ... '"' | "'" ... "'" ;           (backslash escapes)
    IDENT  = letter | "_" , { letter | digit | "_" } ;

Precedence, loosest first: or, and, not, comparison (non-associative),
additive, multiplicative, unary minus, postfix.

Failure modes:
    - ExpressionSyntaxError carrying the character position of the
      offending token.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache

from erp_engines.rules.nodes import (
    Binary,
    Call,
    Field,
    Index,
    ListExpr,
    Literal,
    Member,
    Node,
    Unary,
    Variable,
)
from erp_kernel.exceptions import ExpressionSyntaxError

KEYWORDS = frozenset({"and", "or", "not", "in", "matches", "true", "false", "null"})

# Operator spellings normalized to the canonical form stored in nodes
_COMPARISON_SPELLINGS = {
    "=": "=",
    "==": "=",
    "!=": "!=",
    "<>": "!=",
    "≠": "!=",
    "<": "<",
    "<=": "<=",
    "≤": "<=",
    ">": ">",
    ">=": ">=",
    "≥": ">=",
}

_TWO_CHAR_OPS = ("==", "!=", "<>", "<=", ">=")
_ONE_CHAR_OPS = "=<>≠≤≥+-*/%().,[]$"


@dataclass(frozen=True)
class Token:
    kind: str  # NUMBER | STRING | IDENT | KEYWORD | OP | EOF
    text: str
    position: int
    value: object = None


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue

        if ch.isdigit():
            start = i
            while i < n and text[i].isdigit():
                i += 1
            if i + 1 < n and text[i] == "." and text[i + 1].isdigit():
                i += 1
                while i < n and text[i].isdigit():
                    i += 1
            raw = text[start:i]
            tokens.append(Token("NUMBER", raw, start, Decimal(raw)))
            continue

        if ch in ("'", '"'):
            start = i
            quote = ch
            i += 1
            chars: list[str] = []
            while True:
                if i >= n:
                    raise ExpressionSyntaxError(text, start, "unterminated string")
                c = text[i]
                if c == "\\" and i + 1 < n:
                    nxt = text[i + 1]
                    chars.append({"n": "\n", "t": "\t"}.get(nxt, nxt))
                    i += 2
                    continue
                if c == quote:
                    i += 1
                    break
                chars.append(c)
                i += 1
            tokens.append(Token("STRING", text[start:i], start, "".join(chars)))
            continue

        if ch.isalpha() or ch == "_":
            start = i
            while i < n and (text[i].isalnum() or text[i] == "_"):
                i += 1
            word = text[start:i]
            if word.lower() in KEYWORDS:
                tokens.append(Token("KEYWORD", word.lower(), start))
            else:
                tokens.append(Token("IDENT", word, start))
            continue

        two = text[i : i + 2]
        if two in _TWO_CHAR_OPS:
            tokens.append(Token("OP", two, i))
            i += 2
            continue
        if ch in _ONE_CHAR_OPS:
            tokens.append(Token("OP", ch, i))
            i += 1
            continue

        raise ExpressionSyntaxError(text, i, f"unexpected character {ch!r}")

    tokens.append(Token("EOF", "", n))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    # -- token helpers -------------------------------------------------------

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def peek(self, offset: int = 1) -> Token:
        idx = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[idx]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.kind != "EOF":
            self.pos += 1
        return token

    def at(self, kind: str, text: str | None = None) -> bool:
        token = self.current
        return token.kind == kind and (text is None or token.text == text)

    def expect(self, kind: str, text: str | None = None) -> Token:
        if not self.at(kind, text):
            wanted = text or kind.lower()
            self.fail(f"expected {wanted!r}")
        return self.advance()

    def fail(self, reason: str):
        token = self.current
        found = "end of expression" if token.kind == "EOF" else repr(token.text)
        raise ExpressionSyntaxError(self.text, token.position, f"{reason}, found {found}")

    # -- grammar -------------------------------------------------------------

    def parse(self) -> Node:
        if self.at("EOF"):
            self.fail("empty expression")
        node = self.or_expr()
        if not self.at("EOF"):
            self.fail("unexpected token")
        return node

    def or_expr(self) -> Node:
        node = self.and_expr()
        while self.at("KEYWORD", "or"):
            self.advance()
            node = Binary("or", node, self.and_expr())
        return node

    def and_expr(self) -> Node:
        node = self.not_expr()
        while self.at("KEYWORD", "and"):
            self.advance()
            node = Binary("and", node, self.not_expr())
        return node

    def not_expr(self) -> Node:
        if self.at("KEYWORD", "not"):
            self.advance()
            return Unary("not", self.not_expr())
        return self.comparison()

    def comparison(self) -> Node:
        left = self.additive()
        op = self._comparison_op()
        if op is None:
            return left
        right = self.additive()
        if self._comparison_op(consume=False) is not None:
            self.fail("comparisons cannot be chained")
        return Binary(op, left, right)

    def _comparison_op(self, consume: bool = True) -> str | None:
        token = self.current
        op: str | None = None
        width = 1
        if token.kind == "OP" and token.text in _COMPARISON_SPELLINGS:
            op = _COMPARISON_SPELLINGS[token.text]
        elif token.kind == "KEYWORD" and token.text in ("in", "matches"):
            op = token.text
        elif token.kind == "KEYWORD" and token.text == "not" and self.peek().text == "in":
            op = "not in"
            width = 2
        if op is not None and consume:
            for _ in range(width):
                self.advance()
        return op

    def additive(self) -> Node:
        node = self.multiplicative()
        while self.at("OP", "+") or self.at("OP", "-"):
            op = self.advance().text
            node = Binary(op, node, self.multiplicative())
        return node

    def multiplicative(self) -> Node:
        node = self.unary()
        while self.at("OP", "*") or self.at("OP", "/") or self.at("OP", "%"):
            op = self.advance().text
            node = Binary(op, node, self.unary())
        return node

    def unary(self) -> Node:
        if self.at("OP", "-"):
            self.advance()
            operand = self.unary()
            if isinstance(operand, Literal) and isinstance(operand.value, Decimal):
                return Literal(-operand.value)
            return Unary("-", operand)
        return self.postfix()

    def postfix(self) -> Node:
        node = self.primary()
        while True:
            if self.at("OP", "."):
                self.advance()
                name = self.expect("IDENT").text
                if isinstance(node, Field):
                    node = Field(node.path + (name,))
                else:
                    node = Member(node, name)
            elif self.at("OP", "["):
                self.advance()
                index = self.or_expr()
                self.expect("OP", "]")
                node = Index(node, index)
            else:
                return node

    def primary(self) -> Node:
        token = self.current
        if token.kind == "NUMBER" or token.kind == "STRING":
            self.advance()
            return Literal(token.value)
        if token.kind == "KEYWORD" and token.text in ("true", "false", "null"):
            self.advance()
            return Literal({"true": True, "false": False, "null": None}[token.text])
        if self.at("OP", "$"):
            self.advance()
            return Variable(self.expect("IDENT").text)
        if token.kind == "IDENT":
            self.advance()
            if self.at("OP", "("):
                self.advance()
                args = self._arguments(")")
                return Call(token.text.lower(), args)
            return Field((token.text,))
        if self.at("OP", "("):
            self.advance()
            node = self.or_expr()
            self.expect("OP", ")")
            return node
        if self.at("OP", "["):
            self.advance()
            return ListExpr(self._arguments("]"))
        self.fail("expected a value")

    def _arguments(self, closer: str) -> tuple[Node, ...]:
        args: list[Node] = []
        if self.at("OP", closer):
            self.advance()
            return ()
        while True:
            args.append(self.or_expr())
            if self.at("OP", ","):
                self.advance()
                continue
            self.expect("OP", closer)
            return tuple(args)


def parse_expression(text: str) -> Node:
    """Parse ``text`` into a node tree.  Results are cached by text."""
    if not isinstance(text, str):
        raise ExpressionSyntaxError(str(text), 0, "expression must be a string")
    return _parse_cached(text)


@lru_cache(maxsize=1024)
def _parse_cached(text: str) -> Node:
    return _Parser(text).parse()
