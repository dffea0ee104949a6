"""Tests for the restricted expression interpreter."""

import pytest

from actionrail.processors.expression import ExpressionError, compile_expression, evaluate, is_valid, normalize


class TestEvaluate:
    def test_arithmetic_and_precedence(self):
        assert evaluate("1 + 2 * 3") == 7
        assert evaluate("(1 + 2) * 3") == 9
        assert evaluate("7 // 2 + 7 % 2") == 4

    def test_names_and_field_access(self):
        state = {"user": {"age": 30, "tags": ["a", "b"]}}
        assert evaluate("state.user.age >= 18", {"state": state}) is True
        assert evaluate("state.user.tags[1]", {"state": state}) == "b"
        assert evaluate("state['user']['age']", {"state": state}) == 30

    def test_missing_fields_read_as_none(self):
        assert evaluate("state.nothing.deeper", {"state": {}}) is None

    def test_root_and_current_item(self):
        assert evaluate("$.count + 1", {"$": {"count": 2}}) == 3
        assert evaluate("@.n > 1", {"@": {"n": 2}}) is True

    def test_javascript_operators(self):
        assert evaluate("true && !false") is True
        assert evaluate("1 === 1 || null") is True
        assert evaluate("1 !== 2") is True

    def test_string_concatenation(self):
        assert evaluate("'n=' + n", {"n": 3}) == "n=3"

    def test_conditional_expression(self):
        assert evaluate("'big' if x > 10 else 'small'", {"x": 11}) == "big"

    def test_functions_and_methods(self):
        assert evaluate("len(items)", {"items": [1, 2, 3]}) == 3
        assert evaluate("upper(name)", {"name": "ada"}) == "ADA"
        assert evaluate("name.toLowerCase()", {"name": "ADA"}) == "ada"
        assert evaluate("items.length", {"items": [1, 2]}) == 2
        assert evaluate("coalesce(a, b, 3)", {"a": None, "b": None}) == 3
        assert evaluate("merge(a, {'y': 2})", {"a": {"x": 1}}) == {"x": 1, "y": 2}

    def test_ordering_against_none_is_false(self):
        assert evaluate("x > 1", {"x": None}) is False

    def test_method_on_none_is_none(self):
        assert evaluate("name.upper()", {"name": None}) is None

    def test_operators_inside_strings_are_untouched(self):
        assert evaluate("'a && b'") == "a && b"
        assert normalize("'$@'") == "'$@'"


class TestRestrictions:
    @pytest.mark.parametrize(
        "source",
        [
            "__import__('os')",
            "open('x')",
            "[x for x in items]",
            "lambda: 1",
            "a := 1",
            "f(x=1)",
        ],
    )
    def test_forbidden_constructs(self, source):
        assert not is_valid(source)
        with pytest.raises(ExpressionError):
            compile_expression(source)

    def test_empty_expression(self):
        assert not is_valid("")
        assert not is_valid("   ")

    def test_syntax_error(self):
        with pytest.raises(ExpressionError) as exc_info:
            evaluate("1 +")
        assert exc_info.value.code == "EXPRESSION_ERROR"

    def test_runtime_error_is_wrapped(self):
        with pytest.raises(ExpressionError):
            evaluate("1 / 0")

    def test_huge_power_rejected(self):
        with pytest.raises(ExpressionError):
            evaluate("2 ** 1000")

    def test_names(self):
        assert compile_expression("a + b.c if true else len(d)").names() == {"a", "b", "d"}
