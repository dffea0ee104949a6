"""Tests for the JSONPath accessor."""

import pytest

from actionrail.core.errors import StateError
from actionrail.processors import jsonpath


DOC = {
    "user": {"id": 7, "name": "Ada"},
    "items": [{"n": 1, "name": "a"}, {"n": 2, "name": "b"}, {"n": 3, "name": "c"}],
    "display name": "x",
}


class TestParse:
    def test_dotted_bracketed_and_indexed(self):
        assert jsonpath.parse("$.form.items[2]['display name']") == ("form", "items", 2, "display name")

    def test_leading_root_is_optional(self):
        assert jsonpath.parse("a.b") == jsonpath.parse("$.a.b") == ("a", "b")

    def test_root_alone(self):
        assert jsonpath.parse("$") == ()

    @pytest.mark.parametrize("bad", ["", "   ", "$.a[", "$.a['x", "$..", "$.a[?(@.n > 1]"])
    def test_invalid_paths(self, bad):
        with pytest.raises(StateError) as exc_info:
            jsonpath.parse(bad)
        assert exc_info.value.code == "INVALID_PATH"
        assert not jsonpath.validate_path(bad)

    def test_definite(self):
        assert jsonpath.is_definite(jsonpath.parse("$.a[0].b"))
        assert not jsonpath.is_definite(jsonpath.parse("$.a[*]"))
        assert not jsonpath.is_definite(jsonpath.parse("$..b"))

    def test_format_and_normalize(self):
        assert jsonpath.format_path(("a", 0, "b c")) == "$.a[0]['b c']"
        assert jsonpath.normalize("a['b']") == "$.a.b"
        assert jsonpath.join("$.a", "b", 0) == "$.a.b[0]"


class TestRead:
    def test_get_definite(self):
        assert jsonpath.get(DOC, "$.user.name") == "Ada"
        assert jsonpath.get(DOC, "$.items[-1].name") == "c"
        assert jsonpath.get(DOC, "$['display name']") == "x"

    def test_get_missing_returns_default(self):
        assert jsonpath.get(DOC, "$.user.email") is None
        assert jsonpath.get(DOC, "$.items[10]", "none") == "none"

    def test_get_root(self):
        assert jsonpath.get(DOC, "$") is DOC

    def test_wildcard_returns_list(self):
        assert jsonpath.get(DOC, "$.items[*].n") == [1, 2, 3]

    def test_recursive_descent(self):
        assert jsonpath.query(DOC, "$..name") == ["Ada", "a", "b", "c"]

    def test_filter(self):
        assert jsonpath.query(DOC, "$.items[?(@.n > 1)].name") == ["b", "c"]

    def test_filter_with_string_compare(self):
        assert jsonpath.query(DOC, "$.items[?(@.name == 'b')].n") == [2]

    def test_query_paths_are_concrete(self):
        assert jsonpath.query_paths(DOC, "$.items[-1]") == ["$.items[2]"]

    def test_has(self):
        assert jsonpath.has(DOC, "$.user.id")
        assert not jsonpath.has(DOC, "$.user.email")
        assert jsonpath.has(DOC, "$.items[*]")

    def test_all_paths(self):
        doc = {"a": {"b": 1}, "c": [1]}
        assert jsonpath.all_paths(doc) == ["$.a", "$.a.b", "$.c", "$.c[0]"]
        assert jsonpath.all_paths(doc, leaves_only=True) == ["$.a.b", "$.c[0]"]

    def test_find_paths(self):
        found = jsonpath.find_paths(DOC, lambda value, path: value == 2)
        assert found == ["$.items[1].n"]


class TestWrite:
    def test_set_value_creates_containers(self):
        doc: dict = {}
        jsonpath.set_value(doc, "$.a[2]", 1)
        assert doc == {"a": [None, None, 1]}

    def test_set_value_dash_appends(self):
        doc: dict = {"l": [1]}
        jsonpath.set_value(doc, "$.l[-]", 2)
        jsonpath.set_value(doc, "$.m[-]", "x")
        assert doc == {"l": [1, 2], "m": ["x"]}

    def test_set_value_rejects_scalar_parent(self):
        with pytest.raises(StateError) as exc_info:
            jsonpath.set_value({"a": 1}, "$.a.b", 2)
        assert exc_info.value.code == "TYPE_MISMATCH"

    def test_set_value_rejects_wildcards(self):
        with pytest.raises(StateError) as exc_info:
            jsonpath.set_value({}, "$.a[*]", 1)
        assert exc_info.value.code == "INDEFINITE_PATH"

    def test_delete_value(self):
        doc = {"a": {"b": 1}, "l": [1, 2]}
        assert jsonpath.delete_value(doc, "$.a.b")
        assert jsonpath.delete_value(doc, "$.l[0]")
        assert not jsonpath.delete_value(doc, "$.missing")
        assert doc == {"a": {}, "l": [2]}


class TestPersistentWrites:
    def test_assoc_shares_untouched_subtrees(self):
        doc = {"a": {"x": 0}, "b": {"big": [1, 2, 3]}}
        new = jsonpath.assoc(doc, "$.a.x", 1)
        assert new == {"a": {"x": 1}, "b": {"big": [1, 2, 3]}}
        assert doc["a"]["x"] == 0
        assert new["b"] is doc["b"]
        assert new["a"] is not doc["a"]

    def test_assoc_creates_intermediates(self):
        assert jsonpath.assoc({}, "$.a[1]", "x") == {"a": [None, "x"]}

    def test_assoc_dash_appends(self):
        doc = {"l": [1, 2]}
        assert jsonpath.assoc(doc, "$.l[-]", 3) == {"l": [1, 2, 3]}
        assert doc == {"l": [1, 2]}
        assert jsonpath.assoc({}, "$.a[-]", "x") == {"a": ["x"]}

    def test_assoc_root_returns_value(self):
        assert jsonpath.assoc({"a": 1}, "$", {"b": 2}) == {"b": 2}

    def test_assoc_key_on_list_fails(self):
        with pytest.raises(StateError) as exc_info:
            jsonpath.assoc({"l": [1]}, "$.l.name", 1)
        assert exc_info.value.code == "TYPE_MISMATCH"

    def test_dissoc(self):
        doc = {"a": {"b": 1, "c": 2}, "l": [1, 2, 3]}
        new = jsonpath.dissoc(doc, "$.a.b")
        assert new == {"a": {"c": 2}, "l": [1, 2, 3]}
        assert new["l"] is doc["l"]
        assert jsonpath.dissoc(doc, "$.l[1]")["l"] == [1, 3]
        assert doc == {"a": {"b": 1, "c": 2}, "l": [1, 2, 3]}

    def test_dissoc_missing_path(self):
        with pytest.raises(StateError) as exc_info:
            jsonpath.dissoc({"a": {}}, "$.a.b")
        assert exc_info.value.code == "PATH_NOT_FOUND"

    def test_dissoc_root_empties(self):
        assert jsonpath.dissoc({"a": 1}, "$") == {}


class TestRelations:
    def test_related(self):
        assert jsonpath.is_related("$.a", "$.a.b")
        assert jsonpath.is_related("$.a.b", "$.a")
        assert jsonpath.is_related("$", "$.anything")
        assert not jsonpath.is_related("$.a", "$.b")

    def test_related_with_wildcards(self):
        assert jsonpath.is_related("$.items[*].n", "$.items[3]")

    def test_ancestor(self):
        assert jsonpath.is_ancestor("$.a", "$.a.b")
        assert not jsonpath.is_ancestor("$.a.b", "$.a")
