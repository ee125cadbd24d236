from __future__ import annotations
import bisect
import logging
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Type, Union

from lexer import DEFAULT_MAX_FILE_SIZE, Diagnostic, StepwiseParseError, Token, tokenize
from values import parse_number_literal


logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 200


@dataclass(frozen=True)
class Position:
    line: int
    column: int


@dataclass(frozen=True)
class SourceLocation:
    start: Position
    end: Position


@dataclass(frozen=True)
class Node:
    id: int
    start: int
    end: int
    loc: SourceLocation

    @property
    def type(self) -> str:
        return self.__class__.__name__


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass(frozen=True)
class Program(Statement):
    body: Tuple[Statement, ...]


@dataclass(frozen=True)
class BlockStatement(Statement):
    body: Tuple[Statement, ...]


@dataclass(frozen=True)
class Literal(Expression):
    value: Union[int, float, str, bool, None]
    raw: str


@dataclass(frozen=True)
class Identifier(Expression):
    name: str


@dataclass(frozen=True)
class BinaryExpression(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass(frozen=True)
class UnaryExpression(Expression):
    operator: str
    argument: Expression


@dataclass(frozen=True)
class AssignmentExpression(Expression):
    operator: str
    left: Identifier
    right: Expression


@dataclass(frozen=True)
class VariableDeclarator:
    id: Identifier
    init: Optional[Expression]


@dataclass(frozen=True)
class VariableDeclaration(Statement):
    kind: str
    declarations: Tuple[VariableDeclarator, ...]


@dataclass(frozen=True)
class ExpressionStatement(Statement):
    expression: Expression


@dataclass(frozen=True)
class AssignmentStatement(Statement):
    expression: AssignmentExpression


@dataclass(frozen=True)
class IfStatement(Statement):
    test: Optional[Expression]
    consequent: Optional[Statement]
    alternate: Optional[Statement]


@dataclass(frozen=True)
class WhileStatement(Statement):
    test: Optional[Expression]
    body: Optional[Statement]


@dataclass(frozen=True)
class ForStatement(Statement):
    init: Optional[Union[VariableDeclaration, Expression]]
    test: Optional[Expression]
    update: Optional[Expression]
    body: Optional[Statement]


# ---- Child enumeration ----


def _declaration_children(node: VariableDeclaration) -> Iterator[Node]:
    for declarator in node.declarations:
        yield declarator.id
        if declarator.init is not None:
            yield declarator.init


_CHILDREN: Dict[Type[Node], Callable[[Any], Iterator[Optional[Node]]]] = {
    Program: lambda n: iter(n.body),
    BlockStatement: lambda n: iter(n.body),
    VariableDeclaration: _declaration_children,
    ExpressionStatement: lambda n: iter((n.expression,)),
    AssignmentStatement: lambda n: iter((n.expression,)),
    IfStatement: lambda n: iter((n.test, n.consequent, n.alternate)),
    WhileStatement: lambda n: iter((n.test, n.body)),
    ForStatement: lambda n: iter((n.init, n.test, n.update, n.body)),
    Literal: lambda n: iter(()),
    Identifier: lambda n: iter(()),
    BinaryExpression: lambda n: iter((n.left, n.right)),
    UnaryExpression: lambda n: iter((n.argument,)),
    AssignmentExpression: lambda n: iter((n.left, n.right)),
}


def iter_children(node: Node) -> Iterator[Node]:
    """Yield the direct child nodes of ``node`` in source order.

    Node types outside the closed variant set are treated as leaves.
    """
    enumerate_children = _CHILDREN.get(type(node))
    if enumerate_children is None:
        return
    for child in enumerate_children(node):
        if child is not None:
            yield child


def build_node_index(root: Node) -> Dict[int, Node]:
    index: Dict[int, Node] = {}
    pending: List[Node] = [root]
    while pending:
        node = pending.pop()
        index[node.id] = node
        pending.extend(iter_children(node))
    return index


def _render_field(value: Any, rendered: Dict[int, Dict[str, Any]]) -> Any:
    if isinstance(value, Node):
        return rendered[value.id]
    if isinstance(value, VariableDeclarator):
        return {
            "id": rendered[value.id.id],
            "init": rendered[value.init.id] if value.init is not None else None,
        }
    if isinstance(value, tuple):
        return [_render_field(item, rendered) for item in value]
    return value


def to_dict(root: Node) -> Dict[str, Any]:
    """Render a tree as JSON-ready dictionaries without recursing on depth."""
    rendered: Dict[int, Dict[str, Any]] = {}
    pending: List[Tuple[Node, bool]] = [(root, False)]
    while pending:
        node, expanded = pending.pop()
        if not expanded:
            pending.append((node, True))
            pending.extend((child, False) for child in iter_children(node))
            continue
        out: Dict[str, Any] = {"type": node.type, "id": node.id, "start": node.start, "end": node.end}
        out["loc"] = {
            "start": {"line": node.loc.start.line, "column": node.loc.start.column},
            "end": {"line": node.loc.end.line, "column": node.loc.end.column},
        }
        for f in fields(node):
            if f.name in out:
                continue
            out[f.name] = _render_field(getattr(node, f.name), rendered)
        rendered[node.id] = out
    return rendered[root.id]


# ---- Options ----


@dataclass
class ParseOptions:
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_depth: int = DEFAULT_MAX_DEPTH


def resolve_options(cls: Type[Any], options: Any, overrides: Mapping[str, Any]) -> Any:
    if options is None:
        values: Dict[str, Any] = {}
    elif isinstance(options, cls):
        values = {f.name: getattr(options, f.name) for f in fields(cls)}
    elif isinstance(options, Mapping):
        values = dict(options)
    else:
        raise TypeError(f"Expected {cls.__name__} or a mapping, got {type(options).__name__}")
    values.update(overrides)
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise TypeError(f"Unknown {cls.__name__} field(s): {', '.join(unknown)}")
    return cls(**values)


@dataclass
class ParseResult:
    ast: Program
    errors: List[Diagnostic]
    warnings: List[Diagnostic]
    stats: Dict[str, int]

    @property
    def ok(self) -> bool:
        return not self.errors


class NodeIdAllocator:
    def __init__(self) -> None:
        self.next_id = 1

    def allocate(self) -> int:
        node_id = self.next_id
        self.next_id += 1
        return node_id

    @property
    def allocated(self) -> int:
        return self.next_id - 1


PRECEDENCE = {
    "||": 1,
    "&&": 2,
    "==": 3,
    "!=": 3,
    "===": 3,
    "!==": 3,
    "<": 4,
    ">": 4,
    "<=": 4,
    ">=": 4,
    "+": 5,
    "-": 5,
    "*": 6,
    "/": 6,
    "%": 6,
}

UNARY_OPERATORS = {"!", "-", "+"}


class Parser:
    def __init__(self, tokens: List[Token], source: str, *, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self.tokens = tokens
        self.source = source
        self.max_depth = max_depth
        self.index = 0
        self.depth = 0
        self.errors: List[Diagnostic] = []
        self.warnings: List[Diagnostic] = []
        self.ids = NodeIdAllocator()
        self._last_end = 0
        self._line_starts = [0]
        for offset, ch in enumerate(source):
            if ch == "\n":
                self._line_starts.append(offset + 1)

    def parse(self) -> Program:
        statements: List[Statement] = []
        try:
            while not self._eof:
                statement = self._parse_statement()
                if statement is None:
                    break
                statements.append(statement)
        except StepwiseParseError as error:
            self.errors.append(Diagnostic(error.code, error.message, "error", error.start, error.end))
        except RecursionError:
            # max_depth set above what the interpreter stack can hold.
            token = self._peek()
            start = token.start if token is not None else len(self.source)
            message = f"Nesting exceeds the host recursion limit before max parse depth {self.max_depth}"
            self.errors.append(Diagnostic("max-parse-depth", message, "error", start, start))
        return self._node(Program, 0, len(self.source), body=tuple(statements))

    # ---- Statements ----

    def _parse_statement(self) -> Optional[Statement]:
        self._descend()
        try:
            token = self._peek()
            if token is None:
                return None
            if token.type == "Keyword" and token.value in ("let", "const"):
                return self._parse_var_decl()
            if token.type == "Keyword" and token.value == "if":
                return self._parse_if()
            if token.type == "Keyword" and token.value == "while":
                return self._parse_while()
            if token.type == "Keyword" and token.value == "for":
                return self._parse_for()
            if self._check("{"):
                return self._parse_block()
            return self._parse_expression_statement()
        finally:
            self.depth -= 1

    def _parse_expression_statement(self) -> Optional[Statement]:
        start = self._peek().start
        expr = self._parse_expression()
        if expr is None:
            return None
        self._expect(";")
        if isinstance(expr, AssignmentExpression):
            return self._node(AssignmentStatement, start, self._last_end, expression=expr)
        return self._node(ExpressionStatement, start, self._last_end, expression=expr)

    def _parse_var_decl(self) -> Optional[VariableDeclaration]:
        keyword = self._advance()
        ident = self._peek()
        if ident is None or ident.type != "Identifier":
            self._error("expected-token", f"Expected identifier after {keyword.value}", ident)
            return None
        self._advance()
        init: Optional[Expression] = None
        if self._match("="):
            init = self._parse_expression()
        self._expect(";")
        identifier = self._node(Identifier, ident.start, ident.end, name=ident.value)
        return self._node(
            VariableDeclaration,
            keyword.start,
            self._last_end,
            kind=keyword.value,
            declarations=(VariableDeclarator(id=identifier, init=init),),
        )

    def _parse_if(self) -> IfStatement:
        keyword = self._advance()
        test = self._parse_parenthesized_expression()
        consequent = self._parse_statement()
        alternate: Optional[Statement] = None
        token = self._peek()
        if token is not None and token.type == "Keyword" and token.value == "else":
            self._advance()
            alternate = self._parse_statement()
        return self._node(
            IfStatement,
            keyword.start,
            self._last_end,
            test=test,
            consequent=consequent,
            alternate=alternate,
        )

    def _parse_while(self) -> WhileStatement:
        keyword = self._advance()
        test = self._parse_parenthesized_expression()
        body = self._parse_statement()
        return self._node(WhileStatement, keyword.start, self._last_end, test=test, body=body)

    def _parse_for(self) -> ForStatement:
        keyword = self._advance()
        self._expect("(")
        init: Optional[Union[VariableDeclaration, Expression]] = None
        token = self._peek()
        if token is not None and token.type == "Keyword" and token.value in ("let", "const"):
            init = self._parse_var_decl()
        elif self._check(";"):
            self._advance()
        else:
            init = self._parse_expression()
            self._expect(";")
        test: Optional[Expression] = None
        if not self._eof and not self._check(";"):
            test = self._parse_expression()
        self._expect(";")
        update: Optional[Expression] = None
        if not self._eof and not self._check(")"):
            update = self._parse_expression()
        self._expect(")")
        body = self._parse_statement()
        return self._node(
            ForStatement,
            keyword.start,
            self._last_end,
            init=init,
            test=test,
            update=update,
            body=body,
        )

    def _parse_block(self) -> BlockStatement:
        opening = self._advance()
        statements: List[Statement] = []
        while not self._eof and not self._check("}"):
            statement = self._parse_statement()
            if statement is None:
                break
            statements.append(statement)
        self._expect("}")
        return self._node(BlockStatement, opening.start, self._last_end, body=tuple(statements))

    # ---- Expressions ----

    def _parse_expression(self, min_precedence: int = 0) -> Optional[Expression]:
        self._descend()
        try:
            left = self._parse_unary()
            if left is None:
                return None
            while True:
                token = self._peek()
                if token is None or token.type != "Punct":
                    break
                precedence = PRECEDENCE.get(token.value)
                if precedence is None or precedence <= min_precedence:
                    break
                self._advance()
                right = self._parse_expression(precedence)
                if right is None:
                    break
                left = self._node(
                    BinaryExpression,
                    left.start,
                    right.end,
                    operator=token.value,
                    left=left,
                    right=right,
                )
            return left
        finally:
            self.depth -= 1

    def _parse_unary(self) -> Optional[Expression]:
        token = self._peek()
        if token is not None and token.type == "Punct" and token.value in UNARY_OPERATORS:
            self._descend()
            try:
                self._advance()
                argument = self._parse_unary()
                if argument is None:
                    return None
                return self._node(UnaryExpression, token.start, argument.end, operator=token.value, argument=argument)
            finally:
                self.depth -= 1
        return self._parse_primary()

    def _parse_primary(self) -> Optional[Expression]:
        token = self._peek()
        if token is None:
            self._error("expected-token", "Expected expression but found end of input", None)
            return None
        if token.type == "Number":
            self._advance()
            return self._node(Literal, token.start, token.end, value=parse_number_literal(token.value), raw=token.value)
        if token.type == "String":
            self._advance()
            raw = self.source[token.start:token.end]
            return self._node(Literal, token.start, token.end, value=token.value, raw=raw)
        if token.type == "Keyword" and token.value in ("true", "false", "null"):
            self._advance()
            value = {"true": True, "false": False, "null": None}[token.value]
            return self._node(Literal, token.start, token.end, value=value, raw=token.value)
        if token.type == "Identifier":
            self._advance()
            if self._check("="):
                self._advance()
                right = self._parse_expression()
                identifier = self._node(Identifier, token.start, token.end, name=token.value)
                if right is None:
                    return identifier
                return self._node(
                    AssignmentExpression,
                    token.start,
                    right.end,
                    operator="=",
                    left=identifier,
                    right=right,
                )
            return self._node(Identifier, token.start, token.end, name=token.value)
        if self._check("("):
            self._advance()
            expr = self._parse_expression()
            self._expect(")")
            return expr
        self._error("unexpected-token-in-expression", f"Unexpected token '{token.value}' in expression", token)
        self._advance()
        return None

    def _parse_parenthesized_expression(self) -> Optional[Expression]:
        self._expect("(")
        expr = self._parse_expression()
        self._expect(")")
        return expr

    # ---- Token helpers ----

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.tokens)

    def _peek(self) -> Optional[Token]:
        if self.index >= len(self.tokens):
            return None
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        self._last_end = token.end
        return token

    def _check(self, punct: str) -> bool:
        token = self._peek()
        return token is not None and token.type == "Punct" and token.value == punct

    def _match(self, punct: str) -> bool:
        if self._check(punct):
            self._advance()
            return True
        return False

    def _expect(self, punct: str) -> Optional[Token]:
        if self._check(punct):
            return self._advance()
        token = self._peek()
        found = f"'{token.value}'" if token is not None else "end of input"
        self._error("expected-token", f"Expected \"{punct}\" but found {found}", token)
        return None

    def _error(self, code: str, message: str, token: Optional[Token]) -> None:
        if token is None:
            start = end = len(self.source)
        else:
            start, end = token.start, token.end
        self.errors.append(Diagnostic(code, message, "error", start, end))

    def _descend(self) -> None:
        self.depth += 1
        if self.depth > self.max_depth:
            token = self._peek()
            start = token.start if token is not None else len(self.source)
            raise StepwiseParseError(
                "max-parse-depth",
                f"Max parse depth of {self.max_depth} exceeded",
                start=start,
                end=start,
            )

    # ---- Nodes ----

    def _node(self, cls: Type[Any], start: int, end: int, **props: Any) -> Any:
        return cls(id=self.ids.allocate(), start=start, end=end, loc=self.location(start, end), **props)

    def position(self, offset: int) -> Position:
        line_index = bisect.bisect_right(self._line_starts, offset) - 1
        return Position(line=line_index + 1, column=offset - self._line_starts[line_index] + 1)

    def location(self, start: int, end: int) -> SourceLocation:
        return SourceLocation(start=self.position(start), end=self.position(end))


def parse(source: str, options: Optional[Union[ParseOptions, Mapping[str, Any]]] = None, **overrides: Any) -> ParseResult:
    opts: ParseOptions = resolve_options(ParseOptions, options, overrides)
    lexed = tokenize(source, max_file_size=opts.max_file_size)
    parser = Parser(lexed.tokens, source, max_depth=opts.max_depth)
    ast = parser.parse()
    stats = dict(lexed.stats)
    stats["nodes"] = parser.ids.allocated
    result = ParseResult(
        ast=ast,
        errors=list(lexed.errors) + parser.errors,
        warnings=list(lexed.warnings) + parser.warnings,
        stats=stats,
    )
    logger.debug("parsed %d characters into %d nodes (%d errors)", stats["size"], stats["nodes"], len(result.errors))
    return result
