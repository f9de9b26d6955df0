# conditions.py
"""
Step conditions and ${{ }} interpolation.

A condition is parsed once into a small immutable tree and evaluated against a
plain key -> value lookup (the instance's matrix values plus its env):

    os == 'ubuntu-latest' && (startsWith(target, 'x86_64-unknown-linux-')
        || target starts-with 'i686-unknown-linux-')

Supported:
  - ==, !=
  - &&, ||, !   (also and/or/not, AND/OR/NOT)
  - startsWith(x, 'prefix')  or  x starts-with 'prefix'
  - quoted strings, true/false/null, dotted names (matrix.os, env.JOB)
  - parentheses, and an optional ${{ ... }} wrapper
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Mapping, Optional, Tuple, Union

from .errors import ConfigError, EvalError

Lookup = Mapping[str, Optional[str]]


# ---------------------------------------------------------------------
# Tree
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Optional[str]

    def resolve(self, lookup: Lookup) -> Optional[str]:
        return self.value


@dataclass(frozen=True)
class Var:
    name: str

    def resolve(self, lookup: Lookup) -> Optional[str]:
        if self.name in lookup:
            return lookup[self.name]
        raise EvalError(
            f"undefined variable '{self.name}'",
            details={"known": ", ".join(sorted(k for k in lookup if "." not in k))},
        )


Operand = Union[Literal, Var]


@dataclass(frozen=True)
class Equals:
    left: Operand
    right: Operand

    def evaluate(self, lookup: Lookup) -> bool:
        return self.left.resolve(lookup) == self.right.resolve(lookup)


@dataclass(frozen=True)
class StartsWith:
    subject: Operand
    prefix: Operand

    def evaluate(self, lookup: Lookup) -> bool:
        subject = self.subject.resolve(lookup)
        prefix = self.prefix.resolve(lookup)
        if subject is None or prefix is None:
            return False
        return subject.startswith(prefix)


@dataclass(frozen=True)
class Truthy:
    operand: Operand

    def evaluate(self, lookup: Lookup) -> bool:
        return self.operand.resolve(lookup) not in (None, "", "false")


@dataclass(frozen=True)
class Not:
    operand: "Node"

    def evaluate(self, lookup: Lookup) -> bool:
        return not self.operand.evaluate(lookup)


@dataclass(frozen=True)
class And:
    terms: Tuple["Node", ...]

    def evaluate(self, lookup: Lookup) -> bool:
        return all(t.evaluate(lookup) for t in self.terms)


@dataclass(frozen=True)
class Or:
    terms: Tuple["Node", ...]

    def evaluate(self, lookup: Lookup) -> bool:
        return any(t.evaluate(lookup) for t in self.terms)


Node = Union[Equals, StartsWith, Truthy, Not, And, Or]


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*'|"[^"]*")
  | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
  | (?P<startswith>starts-with\b)
  | (?P<name>[A-Za-z_][A-Za-z0-9_\-]*(?:\.[A-Za-z_][A-Za-z0-9_\-]*)*)
    """,
    re.VERBOSE,
)

_WORD_OPS = {
    "and": "&&",
    "AND": "&&",
    "or": "||",
    "OR": "||",
    "not": "!",
    "NOT": "!",
}

_WRAPPED_RE = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


def _tokenize(source: str) -> List[Tuple[str, str, int]]:
    tokens: List[Tuple[str, str, int]] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m:
            raise ConfigError(
                f"unexpected character {source[pos]!r} in condition",
                details={"expression": source, "position": pos},
            )
        kind = m.lastgroup
        text = m.group()
        if kind == "name" and text in _WORD_OPS:
            kind, text = "op", _WORD_OPS[text]
        if kind != "ws":
            tokens.append((kind, text, pos))
        pos = m.end()
    return tokens


# ---------------------------------------------------------------------
# Parser (recursive descent: or > and > not > comparison > primary)
# ---------------------------------------------------------------------

class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.i = 0

    def _peek(self) -> Optional[Tuple[str, str, int]]:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def _error(self, message: str) -> ConfigError:
        tok = self._peek()
        pos = tok[2] if tok else len(self.source)
        return ConfigError(message, details={"expression": self.source, "position": pos})

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok and tok[0] == "op" and tok[1] == text:
            self.i += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            raise self._error(f"expected '{text}'")

    def parse(self) -> Tuple[Node, Optional[Operand]]:
        if not self.tokens:
            raise self._error("empty condition")
        node = self._or()
        if self._peek() is not None:
            raise self._error(f"unexpected token '{self._peek()[1]}'")
        bare = node.operand if isinstance(node, Truthy) else None
        return node, bare

    def _or(self) -> Node:
        terms = [self._and()]
        while self._accept("||"):
            terms.append(self._and())
        return terms[0] if len(terms) == 1 else Or(tuple(terms))

    def _and(self) -> Node:
        terms = [self._not()]
        while self._accept("&&"):
            terms.append(self._not())
        return terms[0] if len(terms) == 1 else And(tuple(terms))

    def _not(self) -> Node:
        if self._accept("!"):
            return Not(self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node

        tok = self._peek()
        if tok and tok[0] == "name" and tok[1] == "startsWith":
            self.i += 1
            self._expect("(")
            subject = self._operand()
            self._expect(",")
            prefix = self._operand()
            self._expect(")")
            return StartsWith(subject, prefix)

        left = self._operand()
        if self._accept("=="):
            return Equals(left, self._operand())
        if self._accept("!="):
            return Not(Equals(left, self._operand()))
        tok = self._peek()
        if tok and tok[0] == "startswith":
            self.i += 1
            return StartsWith(left, self._operand())
        return Truthy(left)

    def _operand(self) -> Operand:
        tok = self._peek()
        if tok is None:
            raise self._error("unexpected end of condition")
        kind, text, _ = tok
        if kind == "string":
            self.i += 1
            if text[0] == "'":
                return Literal(text[1:-1].replace("''", "'"))
            return Literal(text[1:-1])
        if kind == "name":
            self.i += 1
            if text == "true" or text == "false":
                return Literal(text)
            if text == "null":
                return Literal(None)
            return Var(text)
        raise self._error(f"expected a value, got '{text}'")


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Condition:
    """A parsed condition. Immutable and shared by every instance of a job."""
    source: str
    root: Node
    bare: Optional[Operand] = None

    def evaluate(self, lookup: Lookup) -> bool:
        return self.root.evaluate(lookup)

    def value(self, lookup: Lookup) -> Optional[str]:
        """Value of the expression: the operand itself for `${{ matrix.os }}`, else 'true'/'false'."""
        if self.bare is not None:
            return self.bare.resolve(lookup)
        return "true" if self.evaluate(lookup) else "false"


@lru_cache(maxsize=1024)
def parse_condition(source: str) -> Condition:
    """Parse `source` once; identical sources share the same Condition."""
    m = _WRAPPED_RE.match(source)
    body = m.group(1) if m else source
    root, bare = _Parser(body).parse()
    return Condition(source=source, root=root, bare=bare)


_INTERP_RE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)


def interpolate(text: str, lookup: Lookup) -> str:
    """Replace every ${{ expr }} in text. None renders as an empty string."""
    if "${{" not in text:
        return text

    def _sub(m: re.Match) -> str:
        value = parse_condition(m.group(1).strip()).value(lookup)
        return "" if value is None else value

    return _INTERP_RE.sub(_sub, text)


def interpolate_value(value, lookup: Lookup):
    """interpolate() applied through nested params (dicts/lists); other scalars pass through."""
    if isinstance(value, str):
        return interpolate(value, lookup)
    if isinstance(value, dict):
        return {k: interpolate_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_value(v, lookup) for v in value]
    return value
