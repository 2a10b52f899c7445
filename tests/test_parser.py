"""
Unit tests for the flowl parser.
Tests parse(), the statement patterns and the validation errors.
"""
import pytest
from pathlib import Path

from flowl.errors import (
    IdentConflictError,
    ParseError,
    StatementError,
    TokenError,
    VariableError,
    ERR_INCOMPLETE_SOURCE,
    ERR_IS_KEYWORD,
    ERR_STATEMENT_INFER_FAILED,
    ERR_STATEMENT_TOO_MANY,
    ERR_STATEMENT_UNKNOWN,
    ERR_VARIABLE_FORMAT,
    ERR_VARIABLE_HAS_CYCLE,
    ERR_VARIABLE_NAME_DUPLICATED,
    ERR_VARIABLE_NOT_DEFINED,
    ERR_VARIABLE_VALUE_TYPE,
)
from flowl.parser import parse, split_line
from flowl.lexer import tokenize
from flowl.tokens import TokenType
from flowl.variables import CONDITION_VAR


def blocks_of(ast, pred):
    return [b for b in ast.foreach() if pred(b)]


def test_parse_loads_fns_and_cos():
    ast = parse(
        'load "go:function1"\n'
        'load "shell:/tmp/function2"\n'
        'fn f1 = function1 {\n'
        '  args = {\n'
        '    "k": "v1"\n'
        '  }\n'
        '}\n'
        'co f1\n'
        'co function2 { "k" : "v2" }\n'
    )
    loads, fns, runs = ast.get_blocks()
    assert [b.target1.text for b in loads] == ["go:function1", "shell:/tmp/function2"]
    assert loads[0].target1.type == TokenType.LOAD
    assert [(b.target1.text, b.target2.text) for b in fns] == [("f1", "function1")]
    assert fns[0].args_block().body.to_dict() == {"k": "v1"}
    assert [b.target1.text for b in runs] == ["f1", "function2"]
    assert runs[1].body.to_dict() == {"k": "v2"}


def test_parse_path(tmp_path):
    p = tmp_path / "demo.flowl"
    p.write_text('load "go:print"\nco print\n')
    ast = parse(Path(p))
    assert len(ast.get_blocks()[2]) == 1


def test_description_from_first_comment():
    ast = parse("// say hello\nvar a = 1\n// not this one\n")
    assert ast.desc == "say hello"


def test_trailing_comment_is_ignored():
    ast = parse('load "go:print" // the printer\nco print\n')
    assert len(ast.get_blocks()[0]) == 1


def test_split_line_on_braces_and_loads():
    lx = tokenize('load "go:a" load "go:b"\nfor { co a }\n')
    first = [[t.text for t in line] for line in split_line(lx.lines[1])]
    second = [[t.text for t in line] for line in split_line(lx.lines[2])]
    assert first == [["load", "go:a"], ["load", "go:b"]]
    assert second == [["for", "{"], ["co", "a"], ["}"]]


def test_one_line_bodies():
    ast = parse(
        'load "go:a" load "go:b" load "go:c"\n'
        'co { a b }\n'
        'co c { "x": "1" "y": "2" }\n'
    )
    runs = ast.get_blocks()[2]
    assert runs[0].body.to_list() == ["a", "b"]
    assert runs[1].body.to_dict() == {"x": "1", "y": "2"}


def test_co_return_variable():
    ast = parse('load "go:time"\nvar t\nco time -> t\n')
    co = ast.get_blocks()[2][0]
    assert co.target1.text == "time"
    assert co.operator.text == "->"
    assert co.target2.text == "t"
    assert co.target2.type == TokenType.VARNAME


def test_co_return_variable_must_exist():
    with pytest.raises(VariableError) as exc:
        parse('load "go:time"\nco time -> t\n')
    assert exc.value.rule == ERR_VARIABLE_NOT_DEFINED


def test_for_condition_and_btf():
    ast = parse('load "go:a"\nvar i = 0\nfor $(i) < 3 {\n  i <- $(i) + 1\n  co a\n}\n')
    fb = blocks_of(ast, lambda b: b.is_for())[0]
    assert fb.target2.text == "$(i)<3"
    assert fb.vtbl.get(CONDITION_VAR) is not None
    assert fb.children[-1].is_btf()
    assert [s.desc for s in fb.statements()] == ["rewrite_var"]


def test_if_condition_is_inherited_by_calls():
    ast = parse('load "go:a"\nvar v = "yes"\nif $(v) == "yes" { co a }\n')
    co = blocks_of(ast, lambda b: b.is_co())[0]
    assert co.in_if()
    assert co.exec_condition() is True
    ib = co.parent
    assert ib.vtbl.get(CONDITION_VAR) is None


def test_switch_default_condition():
    ast = parse(
        'load "go:a" load "go:b" load "go:c"\n'
        'var v = 1\n'
        'switch {\n'
        '  case $(v) == 1 { co a }\n'
        '  case $(v) == 2 { co b }\n'
        '  default { co c }\n'
        '}\n'
    )
    default = blocks_of(ast, lambda b: b.is_default())[0]
    assert default.target2.text == "(!($(v)==1))&&(!($(v)==2))"
    a, b, c = blocks_of(ast, lambda b: b.is_co())
    assert (a.exec_condition(), b.exec_condition(), c.exec_condition()) == (True, False, False)


def test_default_without_cases_is_true():
    ast = parse('load "go:c"\nswitch { default { co c } }\n')
    default = blocks_of(ast, lambda b: b.is_default())[0]
    assert default.target2.text == "true"


def test_two_defaults():
    with pytest.raises(StatementError) as exc:
        parse('load "go:c"\nswitch {\ndefault { co c }\ndefault { co c }\n}\n')
    assert exc.value.rule == ERR_STATEMENT_TOO_MANY


def test_directives():
    ast = parse('var name = "x"\nprintln "hello $(name)"\nsleep "1s"\nexit\n')
    ds = blocks_of(ast, lambda b: b.is_directive())
    assert [d.kind.text for d in ds] == ["println", "sleep", "exit"]
    assert ds[0].target1.value() == "hello x"


def test_event_block():
    ast = parse('load "go:event_tick" load "go:a"\nevent { co event_tick }\nco a\n')
    assert ast.has_event()
    tick = blocks_of(ast, lambda b: b.is_co())[0]
    assert tick.in_event()


def test_rewrite_inference():
    ast = parse(
        'var a = 1\n'
        'a <- "s"\n'
        'a <- 2\n'
        'a <- $(a)\n'
        'a <- - 1\n'
        'a <- (1 + 2) * 3\n'
        'a <- $(a) + 1\n'
        'a <- 2 * 3\n'
    )
    stms = ast.global_block.statements()
    types = [s.tokens[1].type for s in stms]
    assert types == [
        TokenType.STRING, TokenType.NUMBER, TokenType.REFVAR,
        TokenType.EXPR, TokenType.EXPR, TokenType.EXPR, TokenType.EXPR,
    ]
    assert stms[4].tokens[1].text == "(1+2)*3"


def test_rewrite_infer_failed():
    with pytest.raises(StatementError) as exc:
        parse("var a = 1\na <- b\n")
    assert exc.value.rule == ERR_STATEMENT_INFER_FAILED


def test_rewrite_undefined():
    with pytest.raises(VariableError):
        parse("b <- 1\n")


def test_unknown_statement():
    with pytest.raises(StatementError) as exc:
        parse("foo bar\n")
    assert exc.value.rule == ERR_STATEMENT_UNKNOWN
    assert exc.value.line == 1


def test_event_body_only_accepts_co():
    with pytest.raises(StatementError):
        parse('event {\nvar a = 1\n}\n')


def test_incomplete_source():
    with pytest.raises(StatementError) as exc:
        parse('load "go:a"\nfor {\n  co a\n')
    assert exc.value.rule == ERR_INCOMPLETE_SOURCE


def test_var_value_type():
    with pytest.raises(VariableError) as exc:
        parse("var a = a100\n")
    assert exc.value.rule == ERR_VARIABLE_VALUE_TYPE


def test_var_duplicated():
    with pytest.raises(VariableError) as exc:
        parse("var a = 1\nvar a = 2\n")
    assert exc.value.rule == ERR_VARIABLE_NAME_DUPLICATED


def test_var_keyword_name():
    with pytest.raises(TokenError) as exc:
        parse("var for = 1\n")
    assert exc.value.rule == ERR_IS_KEYWORD


def test_undefined_reference():
    with pytest.raises(VariableError) as exc:
        parse('load "go:a"\nco a { "k": "$(nope)" }\n')
    assert exc.value.rule == ERR_VARIABLE_NOT_DEFINED
    assert exc.value.line == 2


def test_malformed_field_reference():
    with pytest.raises(VariableError) as exc:
        parse('load "go:a"\nvar t\nco a { "k": "$(t.b.c)" }\n')
    assert exc.value.rule == ERR_VARIABLE_FORMAT


def test_cycle_rejected():
    with pytest.raises(VariableError) as exc:
        parse("var a = $(b)\nvar b = $(a)\n")
    assert exc.value.rule == ERR_VARIABLE_HAS_CYCLE
    assert "'a'" in str(exc.value) or "'b'" in str(exc.value)


def test_fn_duplicated():
    with pytest.raises(IdentConflictError):
        parse('load "go:a"\nfn f = a {\n}\nfn f = a {\n}\n')


def test_fn_called_twice():
    with pytest.raises(IdentConflictError):
        parse('load "go:a"\nfn f = a {\n}\nco f\nco f\n')


def test_fn_alias_conflict():
    with pytest.raises(IdentConflictError):
        parse('load "go:a"\nfn a = a {\n}\n')


def test_error_message_carries_line():
    with pytest.raises(ParseError) as exc:
        parse("var a = 1\n\nvar a = 2\n")
    assert str(exc.value).startswith("3: ")


def test_parsed_variables_are_acyclic():
    ast = parse('var a = 1\nvar b = $(a)\nvar c = "$(a)$(b)"\na <- $(b) + 1\n')
    for b in ast.foreach():
        for _, v in b.vtbl.items():
            assert v.find_cycle() is None
