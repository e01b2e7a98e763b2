"""
Check expression normalization for dbconverge.

PostgreSQL keeps a check constraint as a parse tree and prints it back in its
own spelling: explicit casts, a pair of parentheses around every operator,
``IN`` as ``= ANY (ARRAY[...])``, ``BETWEEN`` expanded into two comparisons
and ``LIKE`` as ``~~``. Declared expressions are parsed into the same shape
and printed with only the parentheses their grouping needs, so the two
spellings of one tree compare equal while a change of grouping or of literal
text does not.
"""

import re
from typing import List, Tuple


Token = Tuple[str, str]
# canonical text plus the precedence of its outermost operator
Rendered = Tuple[str, int]

# binding strength, loosest first
(
    OR,
    AND,
    NOT,
    IS,
    COMPARISON,
    PATTERN,
    OTHER,
    ADDITIVE,
    MULTIPLICATIVE,
    EXPONENT,
    UNARY,
) = range(1, 12)
ATOM = 100

_COMPARISON_OPERATORS = {"<", ">", "=", "<=", ">=", "<>", "!="}
_PATTERN_WORDS = {"in", "like", "ilike", "between"}
_LIKE_OPERATORS = {
    ("like", False): "~~",
    ("like", True): "!~~",
    ("ilike", False): "~~*",
    ("ilike", True): "!~~*",
}
_OPERATOR_SPECIALS = set("~!@#%^&|`?")

_TOKEN_RE = re.compile(
    r"""
      (?P<space>\s+)
    | (?P<str>'(?:[^']|'')*')
    | (?P<qident>"(?:[^"]|"")+")
    | (?P<num>(?:\d+(?:\.\d*)?|\.\d+)(?:e[+-]?\d+)?)
    | (?P<ident>[a-z_][a-z0-9_$]*)
    | (?P<cast>::)
    | (?P<op>[+\-*/<>=~!@\#%^&|`?]+)
    | (?P<punct>[()\[\],.])
    """,
    re.IGNORECASE | re.VERBOSE,
)
_TYPE_NAME = r'(?:"[^"]+"|[a-z_][a-z0-9_]*)'
_CAST_TYPE_RE = re.compile(
    r"\s*" + _TYPE_NAME + r"(?:\." + _TYPE_NAME + r")*"
    r"(?:\s+(?:varying|precision|without\s+time\s+zone|with\s+time\s+zone))?"
    r"(?:\s*\(\s*\d+(?:\s*,\s*\d+)?\s*\))?(?:\[\])*",
    re.IGNORECASE,
)
_CHECK_PREFIX_RE = re.compile(r"^check\s*(?=\()", re.IGNORECASE)
_LITERAL_SPLIT_RE = re.compile(r"('(?:[^']|'')*')")


class ExpressionSyntaxError(ValueError):
    """Raised for syntax the normalizer does not model."""


def tokenize(text: str) -> List[Token]:
    """
    Split an expression into ``(kind, value)`` tokens.

    Casts are dropped, unquoted and quoted identifiers are lower-cased and
    string literals are kept exactly as written.
    """
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise ExpressionSyntaxError(f"unexpected character {text[pos]!r}")
        kind, value = match.lastgroup, match.group()
        pos = match.end()

        if kind == "space":
            continue
        if kind == "cast":
            cast = _CAST_TYPE_RE.match(text, pos)
            if cast is None:
                raise ExpressionSyntaxError("cast without a type name")
            pos = cast.end()
            continue
        if kind == "op":
            value = _trim_operator(value)
            pos = match.start() + len(value)
        elif kind == "ident":
            value = value.lower()
        elif kind == "qident":
            kind, value = "ident", value[1:-1].replace('""', '"').lower()
        tokens.append((kind, value))
    return tokens


def _trim_operator(op: str) -> str:
    # "a>-1" is ">" then "-": a trailing sign only belongs to operators
    # that contain one of the special characters
    if any(c in _OPERATOR_SPECIALS for c in op):
        return op
    while len(op) > 1 and op[-1] in "+-":
        op = op[:-1]
    return op


def _operator_precedence(op: str) -> int:
    if op in _COMPARISON_OPERATORS:
        return COMPARISON
    if op in ("+", "-"):
        return ADDITIVE
    if op in ("*", "/", "%"):
        return MULTIPLICATIVE
    if op == "^":
        return EXPONENT
    return OTHER


def _wrap(operand: Rendered, precedence: int, right_side: bool = False) -> str:
    text, inner = operand
    if inner < precedence or (right_side and inner == precedence):
        return f"({text})"
    return text


def _binary(op: str, left: Rendered, right: Rendered, precedence: int) -> Rendered:
    return f"{_wrap(left, precedence)} {op} {_wrap(right, precedence, True)}", precedence


class ExpressionParser:
    """Precedence-climbing parser over the token stream of one expression."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    def peek(self, offset: int = 0) -> Token:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else ("", "")

    def take(self) -> Token:
        if self.pos >= len(self.tokens):
            raise ExpressionSyntaxError("unexpected end of expression")
        self.pos += 1
        return self.tokens[self.pos - 1]

    def accept(self, kind: str, value: str) -> bool:
        if self.peek() == (kind, value):
            self.pos += 1
            return True
        return False

    def expect(self, kind: str, value: str) -> None:
        if not self.accept(kind, value):
            raise ExpressionSyntaxError(f"expected {value!r}, found {self.peek()[1]!r}")

    def parse(self) -> str:
        text, _ = self.expression(0)
        if self.pos < len(self.tokens):
            raise ExpressionSyntaxError(f"unexpected {self.peek()[1]!r}")
        return text

    def expression(self, min_precedence: int) -> Rendered:
        left = self.prefix()
        while True:
            kind, value = self.peek()
            if kind == "op":
                precedence = _operator_precedence(value)
                if precedence <= min_precedence:
                    return left
                self.pos += 1
                op = "<>" if value == "!=" else value
                left = _binary(op, left, self.expression(precedence), precedence)
            elif kind == "ident" and value in ("and", "or"):
                precedence = AND if value == "and" else OR
                if precedence <= min_precedence:
                    return left
                self.pos += 1
                left = _binary(value, left, self.expression(precedence), precedence)
            elif kind == "ident" and value in ("is", "isnull", "notnull"):
                if IS <= min_precedence:
                    return left
                left = self.is_test(left)
            elif kind == "ident" and self._at_pattern(value):
                if PATTERN <= min_precedence:
                    return left
                left = self.pattern_test(left)
            else:
                return left

    def _at_pattern(self, value: str) -> bool:
        if value in _PATTERN_WORDS:
            return True
        following = self.peek(1)
        return value == "not" and following[0] == "ident" and following[1] in _PATTERN_WORDS

    def prefix(self) -> Rendered:
        kind, value = self.take()
        if kind in ("str", "num"):
            return value, ATOM
        if (kind, value) == ("punct", "("):
            inner = self.expression(0)
            self.expect("punct", ")")
            return inner
        if kind == "op" and value in ("-", "+"):
            if value == "-" and self.peek()[0] == "num":
                # stored as a negative constant, printed '-1'::integer
                return f"'-{self.take()[1]}'", ATOM
            operand = self.expression(UNARY)
            return f"{value}{_wrap(operand, UNARY, True)}", UNARY
        if kind == "ident":
            return self.word(value)
        raise ExpressionSyntaxError(f"unexpected {value!r}")

    def word(self, value: str) -> Rendered:
        if value in ("null", "true", "false"):
            return value, ATOM
        if value == "not":
            return f"not {_wrap(self.expression(NOT), NOT, True)}", NOT
        if value == "case":
            return self.case()
        if value == "array" and self.peek() == ("punct", "["):
            return f"array[{', '.join(self.items('[', ']'))}]", ATOM
        if value == "cast" and self.peek() == ("punct", "("):
            return self.cast()
        if value in ("any", "some", "all") and self.peek() == ("punct", "("):
            args = self.items("(", ")")
            if len(args) != 1:
                raise ExpressionSyntaxError(f"{value} takes one argument")
            return f"{'all' if value == 'all' else 'any'}({args[0]})", ATOM

        name = value
        while self.accept("punct", "."):
            kind, part = self.take()
            if kind != "ident":
                raise ExpressionSyntaxError(f"unexpected {part!r} after '.'")
            name += "." + part
        if self.peek() == ("punct", "("):
            return f"{name}({', '.join(self.items('(', ')', allow_empty=True))})", ATOM
        return name, ATOM

    def items(self, opening: str, closing: str, allow_empty: bool = False) -> List[str]:
        self.expect("punct", opening)
        if allow_empty and self.accept("punct", closing):
            return []
        values = [self.expression(0)[0]]
        while self.accept("punct", ","):
            values.append(self.expression(0)[0])
        self.expect("punct", closing)
        return values

    def is_test(self, left: Rendered) -> Rendered:
        word = self.take()[1]
        if word == "isnull":
            return f"{_wrap(left, IS)} is null", IS
        if word == "notnull":
            return f"{_wrap(left, IS)} is not null", IS

        test = "is not" if self.accept("ident", "not") else "is"
        kind, value = self.take()
        if kind == "ident" and value in ("null", "true", "false", "unknown"):
            return f"{_wrap(left, IS)} {test} {value}", IS
        if (kind, value) == ("ident", "distinct"):
            self.expect("ident", "from")
            return _binary(f"{test} distinct from", left, self.expression(IS), IS)
        raise ExpressionSyntaxError(f"unexpected {value!r} after IS")

    def pattern_test(self, left: Rendered) -> Rendered:
        negated = self.accept("ident", "not")
        word = self.take()[1]
        if word == "in":
            values = self.items("(", ")")
            op, quantifier = ("<>", "all") if negated else ("=", "any")
            array = (f"{quantifier}(array[{', '.join(values)}])", ATOM)
            return _binary(op, left, array, COMPARISON)
        if word == "between":
            low = self.expression(PATTERN)
            self.expect("ident", "and")
            high = self.expression(PATTERN)
            if negated:
                return _binary(
                    "or",
                    _binary("<", left, low, COMPARISON),
                    _binary(">", left, high, COMPARISON),
                    OR,
                )
            return _binary(
                "and",
                _binary(">=", left, low, COMPARISON),
                _binary("<=", left, high, COMPARISON),
                AND,
            )
        return _binary(_LIKE_OPERATORS[(word, negated)], left, self.expression(PATTERN), OTHER)

    def case(self) -> Rendered:
        parts = ["case"]
        if self.peek() != ("ident", "when"):
            parts.append(self.expression(0)[0])
        while self.accept("ident", "when"):
            parts.append("when " + self.expression(0)[0])
            self.expect("ident", "then")
            parts.append("then " + self.expression(0)[0])
        if self.accept("ident", "else"):
            parts.append("else " + self.expression(0)[0])
        self.expect("ident", "end")
        parts.append("end")
        return " ".join(parts), ATOM

    def cast(self) -> Rendered:
        self.expect("punct", "(")
        operand = self.expression(0)
        self.expect("ident", "as")
        depth = 1
        while depth:
            kind, value = self.take()
            if kind == "punct" and value == "(":
                depth += 1
            elif kind == "punct" and value == ")":
                depth -= 1
        return operand


def canonical_expression(expression: str) -> str:
    """Canonical form of a check expression, insensitive to store re-spelling."""
    text = _CHECK_PREFIX_RE.sub("", expression.strip())
    try:
        return ExpressionParser(tokenize(text)).parse()
    except ExpressionSyntaxError:
        return plain_form(text)


def plain_form(text: str) -> str:
    """
    Textual normalization for expressions the parser does not model.

    Drops casts and identifier quotes, collapses whitespace and lower-cases
    everything outside string literals, then removes parentheses that wrap
    the whole expression.
    """
    pieces = []
    for index, piece in enumerate(_LITERAL_SPLIT_RE.split(text)):
        if index % 2:
            pieces.append(piece)
            continue
        piece = re.sub(r"::" + _CAST_TYPE_RE.pattern, "", piece, flags=re.IGNORECASE)
        pieces.append(re.sub(r"\s+", " ", piece.replace('"', "")).lower())

    result = "".join(pieces).strip()
    while _wraps_whole(result):
        result = result[1:-1].strip()
    return result


def _wraps_whole(text: str) -> bool:
    if not (text.startswith("(") and text.endswith(")")):
        return False
    depth = 0
    quoted = False
    for index, char in enumerate(text):
        if char == "'":
            quoted = not quoted
        elif quoted:
            continue
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0 and index < len(text) - 1:
                return False
    return depth == 0
