"""Expression language for template values.

Strings in a template may embed expressions with ``${ ... }``:

    name: "${toLower(appName)}stg"            # interpolation, always a string
    value: "${storage.properties.endpoint}"   # whole-string, keeps raw type
    literal: "cost is $${amount}"             # '$${' escapes to a literal '${'

Expression grammar:

    expr    := primary ( '.' IDENT | '[' expr ']' )*
    primary := STRING | NUMBER | 'true' | 'false' | 'null'
             | IDENT '(' [ expr ( ',' expr )* ] ')'
             | IDENT
             | '(' expr ')'

String literals are single-quoted; a doubled quote ('') is an escaped quote.
"""

import re
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

from common import ParseError

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<punct>[.\[\](),])
""", re.VERBOSE)

KEYWORDS = {'true': True, 'false': False, 'null': None}


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Identifier:
    name: str


@dataclass(frozen=True)
class Member:
    target: 'Node'
    name: str


@dataclass(frozen=True)
class Index:
    target: 'Node'
    index: 'Node'


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple


@dataclass(frozen=True)
class Interpolation:
    """Mixed literal text and expressions; evaluates to a string."""
    parts: tuple  # str | Node


Node = Union[Literal, Identifier, Member, Index, Call, Interpolation]


@dataclass(frozen=True)
class Expression:
    """A parsed template expression with its source text.

    Attributes:
        source: Original string as written in the document
        node: Root AST node
    """
    source: str
    node: Node

    def __str__(self) -> str:
        return self.source


@dataclass(frozen=True)
class Reference:
    """An identifier use with its statically-known accessor path.

    `storage.properties.endpoint` -> Reference('storage', ('properties', 'endpoint'))
    `listKeys(storage)` -> Reference('storage', (), via='listKeys')
    """
    name: str
    path: tuple = ()
    via: Optional[str] = None


@dataclass
class _Token:
    kind: str
    value: str
    pos: int


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ParseError(f"Unexpected character {text[pos]!r} at offset {pos} in expression '{text}'")
        kind = match.lastgroup or ''
        if kind != 'ws':
            value = match.group(kind)
            tokens.append(_Token(kind if kind != 'punct' else value, value, pos))
        pos = match.end()
    tokens.append(_Token('eof', '', len(text)))
    return tokens


class _Parser:
    """Recursive descent parser over a token list."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> _Token:
        return self.tokens[self.pos]

    def _advance(self) -> _Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _expect(self, kind: str) -> _Token:
        token = self._advance()
        if token.kind != kind:
            found = token.value or 'end of expression'
            raise ParseError(f"Expected '{kind}' but found '{found}' at offset {token.pos} "
                             f"in expression '{self.text}'")
        return token

    def parse(self) -> Node:
        if self._peek().kind == 'eof':
            raise ParseError("Empty expression")
        node = self._expression()
        token = self._peek()
        if token.kind != 'eof':
            raise ParseError(f"Unexpected '{token.value}' at offset {token.pos} in expression '{self.text}'")
        return node

    def _expression(self) -> Node:
        node = self._primary()
        while True:
            token = self._peek()
            if token.kind == '.':
                self._advance()
                node = Member(node, self._expect('ident').value)
            elif token.kind == '[':
                self._advance()
                index = self._expression()
                self._expect(']')
                node = Index(node, index)
            else:
                return node

    def _primary(self) -> Node:
        token = self._advance()
        if token.kind == 'number':
            return Literal(int(token.value))
        if token.kind == 'string':
            return Literal(token.value[1:-1].replace("''", "'"))
        if token.kind == '(':
            node = self._expression()
            self._expect(')')
            return node
        if token.kind == 'ident':
            if token.value in KEYWORDS:
                return Literal(KEYWORDS[token.value])
            if self._peek().kind == '(':
                return self._call(token.value)
            return Identifier(token.value)
        found = token.value or 'end of expression'
        raise ParseError(f"Unexpected '{found}' at offset {token.pos} in expression '{self.text}'")

    def _call(self, name: str) -> Call:
        self._expect('(')
        args: list[Node] = []
        if self._peek().kind != ')':
            args.append(self._expression())
            while self._peek().kind == ',':
                self._advance()
                args.append(self._expression())
        self._expect(')')
        return Call(name, tuple(args))


def parse_expression(text: str) -> Node:
    """Parse the inside of a ``${ ... }`` block.

    Raises:
        ParseError: On syntax errors
    """
    return _Parser(text.strip()).parse()


def _find_close(text: str, start: int) -> int:
    """Return the index of the '}' closing an expression opened before `start`.

    Braces inside quoted string literals do not count.
    """
    in_string = False
    i = start
    while i < len(text):
        ch = text[i]
        if in_string:
            if ch == "'":
                if i + 1 < len(text) and text[i + 1] == "'":
                    i += 1
                else:
                    in_string = False
        elif ch == "'":
            in_string = True
        elif ch == '}':
            return i
        i += 1
    raise ParseError(f"Unterminated '${{' in '{text}'")


def split_interpolation(text: str) -> list:
    """Split a string into literal text and parsed expression nodes.

    Adjacent literal fragments are merged; '$${' becomes a literal '${'.
    """
    parts: list = []
    buf = ''
    i = 0
    while i < len(text):
        if text.startswith('$${', i):
            buf += '${'
            i += 3
        elif text.startswith('${', i):
            close = _find_close(text, i + 2)
            if buf:
                parts.append(buf)
                buf = ''
            parts.append(parse_expression(text[i + 2:close]))
            i = close + 1
        else:
            buf += text[i]
            i += 1
    if buf:
        parts.append(buf)
    return parts


def compile_value(value: Any) -> Any:
    """Compile a raw document value into literals and Expressions.

    Dicts and lists are compiled recursively. A string that is exactly one
    ``${expr}`` compiles to an Expression whose node is the expression itself,
    so its raw (non-string) value survives evaluation.

    Raises:
        ParseError: On expression syntax errors
    """
    if isinstance(value, dict):
        return {k: compile_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [compile_value(v) for v in value]
    if not isinstance(value, str) or '$' not in value:
        return value

    parts = split_interpolation(value)
    if not parts:
        return ''
    if all(isinstance(p, str) for p in parts):
        return ''.join(parts)
    if len(parts) == 1:
        return Expression(value, parts[0])
    return Expression(value, Interpolation(tuple(parts)))


def walk(node: Node) -> Iterator[Node]:
    """Yield node and all of its descendants, depth-first."""
    yield node
    if isinstance(node, Member):
        yield from walk(node.target)
    elif isinstance(node, Index):
        yield from walk(node.target)
        yield from walk(node.index)
    elif isinstance(node, Call):
        for arg in node.args:
            yield from walk(arg)
    elif isinstance(node, Interpolation):
        for part in node.parts:
            if not isinstance(part, str):
                yield from walk(part)


def _chain(node: Node) -> Optional[tuple[str, tuple]]:
    """Unwind a Member/Index chain to (root identifier, static path).

    The path stops at the first non-literal index.
    """
    path: list = []
    current = node
    while True:
        if isinstance(current, Identifier):
            return current.name, tuple(reversed(path))
        if isinstance(current, Member):
            path.append(current.name)
            current = current.target
        elif isinstance(current, Index):
            if isinstance(current.index, Literal) and isinstance(current.index.value, (str, int)):
                path.append(current.index.value)
            else:
                path.clear()
            current = current.target
        else:
            return None


def references(node: Node) -> list[Reference]:
    """Collect identifier references in an expression, in source order."""
    found: list[Reference] = []
    _collect(node, found)
    return found


def _collect(node: Node, found: list[Reference]) -> None:
    if isinstance(node, (Identifier, Member, Index)):
        chain = _chain(node)
        if chain is not None:
            found.append(Reference(chain[0], chain[1]))
            # Dynamic indices still contain references of their own
            current = node
            while isinstance(current, (Member, Index)):
                if isinstance(current, Index):
                    _collect(current.index, found)
                current = current.target
            return
        if isinstance(node, Member):
            _collect(node.target, found)
        elif isinstance(node, Index):
            _collect(node.target, found)
            _collect(node.index, found)
    elif isinstance(node, Call):
        for arg in node.args:
            if isinstance(arg, Identifier):
                found.append(Reference(arg.name, (), via=node.name))
            else:
                _collect(arg, found)
    elif isinstance(node, Interpolation):
        for part in node.parts:
            if not isinstance(part, str):
                _collect(part, found)


def iter_expressions(value: Any) -> Iterator[Expression]:
    """Yield every Expression inside a compiled value."""
    if isinstance(value, Expression):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_expressions(v)
    elif isinstance(value, list):
        for v in value:
            yield from iter_expressions(v)
