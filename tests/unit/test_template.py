"""Tests for {{placeholder}} expansion."""

from actionrail.processors.template import (
    escape,
    expand,
    expand_value,
    extract_variables,
    format_value,
    has_variables,
    unescape,
    validate_template,
)


class TestExpand:
    def test_top_level_key(self):
        assert expand("/makes/{{make}}", {"make": "ford"}) == "/makes/ford"

    def test_jsonpath_and_dotted(self):
        ctx = {"user": {"id": 7, "tags": ["a", "b"]}}
        assert expand("{{$.user.id}}", ctx) == "7"
        assert expand("{{user.tags[1]}}", ctx) == "b"

    def test_missing_path_renders_empty(self):
        assert expand("x={{$.none}}", {}) == "x="

    def test_unknown_bare_name_is_left_alone(self):
        assert expand("hello {{nope}}", {}) == "hello {{nope}}"

    def test_variables_map_names_to_paths(self):
        ctx = {"form": {"make": "ford"}}
        assert expand("/{{make}}", ctx, {"make": "$.form.make"}) == "/ford"

    def test_no_placeholders(self):
        assert expand("plain", {"a": 1}) == "plain"

    def test_formats(self):
        assert format_value(None) == ""
        assert format_value(True) == "true"
        assert format_value({"a": [1, 2]}) == '{"a":[1,2]}'
        assert format_value(2.5) == "2.5"


class TestExpandValue:
    def test_single_placeholder_keeps_type(self):
        assert expand_value("{{$.count}}", {"count": 3}) == 3
        assert expand_value("{{$.items}}", {"items": [1]}) == [1]

    def test_single_placeholder_missing_is_none(self):
        assert expand_value("{{$.gone}}", {}) is None

    def test_nested_structures(self):
        ctx = {"id": 5, "name": "Ada"}
        body = {"user": {"id": "{{id}}", "greeting": "hi {{name}}"}, "list": ["{{id}}", 1]}
        assert expand_value(body, ctx) == {"user": {"id": 5, "greeting": "hi Ada"}, "list": [5, 1]}

    def test_non_strings_pass_through(self):
        assert expand_value(42, {}) == 42
        assert expand_value(None, {}) is None


class TestTemplateHelpers:
    def test_extract_variables(self):
        assert extract_variables("{{a}} {{ b }} {{a}}") == ["a", "b"]
        assert extract_variables("") == []

    def test_has_variables(self):
        assert has_variables("x {{y}}")
        assert not has_variables("x")
        assert not has_variables(3)

    def test_validate_template(self):
        assert validate_template("{{a}} and {{$.b}}") == []
        assert "Unbalanced template braces" in validate_template("{{a")
        assert any("Invalid path" in e for e in validate_template("{{$.a[}}"))

    def test_escape_roundtrip(self):
        text = "literal {{x}}"
        escaped = escape(text)
        assert not has_variables(escaped)
        assert unescape(escaped) == text
