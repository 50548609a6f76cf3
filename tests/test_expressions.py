import pytest

from pipewright.errors import ConditionError
from pipewright.expressions import (
    ExpressionContext,
    StatusView,
    parse,
    render,
    strip_template,
    template_expressions,
    to_str,
)


class FixedStatus(StatusView):
    def __init__(self, success=True, failure=False, cancelled=False):
        self._s, self._f, self._c = success, failure, cancelled

    def success(self):
        return self._s

    def failure(self):
        return self._f

    def cancelled(self):
        return self._c


def ctx(**namespaces):
    return ExpressionContext(namespaces)


def test_needs_result_comparison():
    c = ctx(needs={"build": {"result": "success"}, "test": {"result": "failure"}})
    assert parse("needs.build.result == 'success'").is_true(c)
    assert not parse("needs.test.result == 'success'").is_true(c)
    assert parse("needs.test.result != 'success'").is_true(c)


def test_string_comparison_ignores_case():
    c = ctx(matrix={"os": "Linux"})
    assert parse("matrix.os == 'linux'").is_true(c)


def test_and_binds_tighter_than_or():
    c = ctx()
    assert parse("true || false && false").is_true(c)
    assert not parse("(true || false) && false").is_true(c)
    assert parse("!false && !(false)").is_true(c)


def test_missing_reference_is_null_and_falsy():
    c = ctx(matrix={})
    assert parse("matrix.target").evaluate(c) is None
    assert not parse("matrix.target").is_true(c)
    assert parse("matrix.target == null").is_true(c)


def test_number_and_string_compare_numerically():
    c = ctx(matrix={"node": 20})
    assert parse("matrix.node == '20'").is_true(c)


def test_builtin_functions():
    c = ctx(matrix={"target": "x86_64-unknown-linux-musl"}, list={"os": ["linux", "mac"]})
    assert parse("endsWith(matrix.target, '-musl')").is_true(c)
    assert parse("startsWith(matrix.target, 'X86')").is_true(c)
    assert parse("contains(list.os, 'MAC')").is_true(c)
    assert parse("format('{0}-{1}', 'a', 2)").evaluate(c) == "a-2"


def test_contains_wrong_arity():
    with pytest.raises(ConditionError):
        parse("contains('a')").evaluate(ctx())


def test_status_functions_need_a_status_view():
    assert parse("always()").is_true(ctx())
    with pytest.raises(ConditionError):
        parse("failure()").evaluate(ctx())

    c = ExpressionContext({}, status=FixedStatus(success=False, failure=True))
    assert parse("failure()").is_true(c)
    assert not parse("success()").is_true(c)
    assert parse("success() || failure()").is_true(c)


def test_uses_status_and_references():
    expr = parse("always() && needs.a.result == 'success' || needs.b.result == 'failure'")
    assert expr.uses_status()
    assert expr.references("needs") == {"a", "b"}
    assert not parse("needs.a.result == 'success'").uses_status()


def test_hyphenated_job_names_are_identifiers():
    c = ctx(needs={"node-ci": {"result": "success"}})
    assert parse("needs.node-ci.result == 'success'").is_true(c)


@pytest.mark.parametrize("text", ["", "a ==", "(a", "a b", "a @ b", "f(,)"])
def test_malformed_expressions_raise(text):
    with pytest.raises(ConditionError):
        parse(text)


def test_unknown_function():
    with pytest.raises(ConditionError):
        parse("nope()").evaluate(ctx())


def test_strip_template():
    assert strip_template("${{ always() }}") == "always()"
    assert strip_template("  success()  ") == "success()"


def test_render_substitutes_every_template():
    c = ctx(runner={"os": "Linux"}, matrix={"py": "3.12", "flag": True})
    assert render("${{ runner.os }}-py${{ matrix.py }}-${{ matrix.flag }}", c) == "Linux-py3.12-true"
    assert render("no templates here", c) == "no templates here"
    assert render("${{ matrix.missing }}x", c) == "x"


def test_render_hash_files_uses_context_callback():
    seen = []

    def fake_hash(patterns):
        seen.append(patterns)
        return "abc"

    c = ExpressionContext({"runner": {"os": "Linux"}}, hash_files=fake_hash)
    assert render("${{ runner.os }}-${{ hashFiles('**/Cargo.lock', 'x') }}", c) == "Linux-abc"
    assert seen == [["**/Cargo.lock", "x"]]


def test_template_expressions_parse_every_block():
    exprs = template_expressions("a ${{ matrix.x }} b ${{ env.Y }}")
    assert [e.text for e in exprs] == ["matrix.x", "env.Y"]
    with pytest.raises(ConditionError):
        template_expressions("${{ matrix. }}")


def test_to_str():
    assert to_str(None) == ""
    assert to_str(False) == "false"
    assert to_str(2.0) == "2"
    assert to_str({"b": 1, "a": 2}) == '{"a":2,"b":1}'
