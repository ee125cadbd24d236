import pytest

from parser import (
    AssignmentExpression,
    AssignmentStatement,
    BinaryExpression,
    BlockStatement,
    ExpressionStatement,
    ForStatement,
    Identifier,
    IfStatement,
    Literal,
    ParseOptions,
    UnaryExpression,
    VariableDeclaration,
    WhileStatement,
    build_node_index,
    iter_children,
    parse,
    to_dict,
)


def parse_ok(source):
    result = parse(source)
    assert result.errors == [], [e.to_dict() for e in result.errors]
    return result.ast


def only_expression(source):
    statement = parse_ok(source).body[0]
    assert isinstance(statement, ExpressionStatement)
    return statement.expression


def test_variable_declaration():
    decl = parse_ok("let x = 5;").body[0]
    assert isinstance(decl, VariableDeclaration)
    assert decl.kind == "let"
    assert len(decl.declarations) == 1
    assert decl.declarations[0].id.name == "x"
    assert isinstance(decl.declarations[0].init, Literal)
    assert decl.declarations[0].init.value == 5
    assert (decl.start, decl.end) == (0, 10)


def test_declaration_without_initializer():
    decl = parse_ok("const c;").body[0]
    assert decl.kind == "const"
    assert decl.declarations[0].init is None


def test_multiplication_binds_tighter_than_addition():
    expr = only_expression("1 + 2 * 3;")
    assert isinstance(expr, BinaryExpression) and expr.operator == "+"
    assert isinstance(expr.right, BinaryExpression) and expr.right.operator == "*"


def test_binary_operators_are_left_associative():
    expr = only_expression("8 - 4 - 2;")
    assert expr.operator == "-"
    assert isinstance(expr.left, BinaryExpression)
    assert expr.right.value == 2


def test_parentheses_reset_precedence():
    expr = only_expression("(1 + 2) * 3;")
    assert expr.operator == "*"
    assert expr.left.operator == "+"


def test_precedence_ladder():
    expr = only_expression("a || b && c == d < e + f * g;")
    chain = []
    while isinstance(expr, BinaryExpression):
        chain.append(expr.operator)
        expr = expr.right
    assert chain == ["||", "&&", "==", "<", "+", "*"]


def test_unary_binds_tighter_than_binary():
    expr = only_expression("-a * !b;")
    assert expr.operator == "*"
    assert isinstance(expr.left, UnaryExpression) and expr.left.operator == "-"
    assert isinstance(expr.right, UnaryExpression) and expr.right.operator == "!"


def test_assignment_at_statement_level():
    statement = parse_ok("x = y = 2;").body[0]
    assert isinstance(statement, AssignmentStatement)
    assert statement.expression.left.name == "x"
    assert isinstance(statement.expression.right, AssignmentExpression)


def test_if_else_and_while():
    program = parse_ok("if (a) b; else { c; } while (x < 3) x = x + 1;")
    branch, loop = program.body
    assert isinstance(branch, IfStatement)
    assert isinstance(branch.consequent, ExpressionStatement)
    assert isinstance(branch.alternate, BlockStatement)
    assert isinstance(loop, WhileStatement)
    assert isinstance(loop.body, AssignmentStatement)


def test_for_clauses_are_optional():
    loop = parse_ok("for (;;) {}").body[0]
    assert isinstance(loop, ForStatement)
    assert (loop.init, loop.test, loop.update) == (None, None, None)
    assert isinstance(loop.body, BlockStatement)


def test_for_with_declaration():
    loop = parse_ok("for (let i = 0; i < 3; i = i + 1) { }").body[0]
    assert isinstance(loop.init, VariableDeclaration)
    assert loop.test.operator == "<"
    assert isinstance(loop.update, AssignmentExpression)


def test_node_ids_are_unique_and_repeatable():
    source = "let a = 1; { let b = a + 2; } if (a) a = 3;"
    first = parse(source)
    second = parse(source)
    index = build_node_index(first.ast)
    assert len(index) == first.stats["nodes"]
    assert sorted(index) == list(range(1, first.stats["nodes"] + 1))
    assert to_dict(first.ast) == to_dict(second.ast)


def test_locations_are_one_based():
    program = parse_ok("let x = 1;\n  let y = 2;")
    second = program.body[1]
    assert (second.loc.start.line, second.loc.start.column) == (2, 3)
    assert (second.loc.end.line, second.loc.end.column) == (2, 13)


def test_string_literal_raw_keeps_quotes():
    literal = only_expression("'hi';")
    assert literal.value == "hi"
    assert literal.raw == "'hi'"


def test_missing_initializer_reports_diagnostics():
    result = parse("let x = ;")
    codes = [e.code for e in result.errors]
    assert "unexpected-token-in-expression" in codes
    assert result.ast.body[0].declarations[0].init is None


def test_missing_semicolon():
    result = parse("let x = 1")
    assert [e.code for e in result.errors] == ["expected-token"]
    assert result.ast.body[0].declarations[0].init.value == 1


def test_lexer_diagnostics_are_merged():
    result = parse("let x = 1 # 2;")
    assert "unknown-token" in [e.code for e in result.errors]
    assert not result.ok


def test_depth_limit_yields_partial_tree():
    source = "let a = 1; " + "(" * 300 + "1" + ")" * 300 + ";"
    result = parse(source)
    assert [e.code for e in result.errors] == ["max-parse-depth"]
    assert result.ast.type == "Program"
    assert isinstance(result.ast.body[0], VariableDeclaration)


def test_depth_limit_is_configurable():
    source = "((((1))));"
    assert parse(source, max_depth=3).errors[0].code == "max-parse-depth"
    assert parse(source, ParseOptions(max_depth=50)).ok


def test_depth_beyond_host_recursion_is_a_diagnostic():
    source = "let a = 1; let b = " + "(" * 5000 + "1" + ")" * 5000 + ";"
    result = parse(source, max_depth=100000)
    assert [e.code for e in result.errors] == ["max-parse-depth"]
    assert result.ast.type == "Program"
    assert isinstance(result.ast.body[0], VariableDeclaration)


def test_unknown_option_is_rejected():
    with pytest.raises(TypeError):
        parse("1;", {"maxDepth": 3})


def test_to_dict_is_json_shaped():
    tree = to_dict(parse_ok("let x = 1 + 2;"))
    decl = tree["body"][0]
    assert decl["type"] == "VariableDeclaration"
    assert decl["declarations"][0]["id"] == {
        "type": "Identifier",
        "id": decl["declarations"][0]["id"]["id"],
        "start": 4,
        "end": 5,
        "loc": {"start": {"line": 1, "column": 5}, "end": {"line": 1, "column": 6}},
        "name": "x",
    }
    assert decl["declarations"][0]["init"]["operator"] == "+"


def test_iter_children_in_source_order():
    branch = parse_ok("if (a) b; else c;").body[0]
    children = list(iter_children(branch))
    assert isinstance(children[0], Identifier)
    assert [type(c) for c in children[1:]] == [ExpressionStatement, ExpressionStatement]
