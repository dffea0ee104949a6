"""JSONPath accessor for nested JSON documents.

Supported syntax:
    $                   the root
    $.a.b / a.b         child keys (the leading ``$`` is optional)
    $['a b']            bracketed keys, single or double quoted
    $.items[0] / [-1]   list indices, negative counts from the end
    $.items[-]          one past the last item; writing there appends
    $.items[*] / $.a.*  wildcard over list items or object values
    $..name             recursive descent
    $.items[?(@.n > 1)] filter, evaluated by the restricted expression interpreter

A path without wildcards, descent or filters is *definite*: it addresses at
most one location and is the only kind ``set_value``, ``assoc`` and
``dissoc`` accept.

``assoc`` and ``dissoc`` never mutate their input. They copy only the
containers along the path and share every untouched subtree with the
original, which is what lets the state manager keep old documents around for
history without deep-copying on each patch.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterator

from actionrail.core.errors import StateError
from actionrail.core.models import MISSING


@dataclass(frozen=True)
class Wildcard:
    def __repr__(self) -> str:
        return "*"


@dataclass(frozen=True)
class Descend:
    """Recursive descent to ``key`` (a name or ``WILDCARD``) at any depth."""

    key: str | Wildcard


@dataclass(frozen=True)
class Filter:
    expression: str


WILDCARD = Wildcard()
APPEND = "-"

Segment = Any  # str | int | Wildcard | Descend | Filter

_SIMPLE_KEY = re.compile(r"^[A-Za-z_$][\w$-]*$")


# --- Parsing ---


@lru_cache(maxsize=2048)
def parse(path: str) -> tuple[Segment, ...]:
    """Parse a path expression into segments.

    >>> parse("$.form.items[2]['display name']")
    ('form', 'items', 2, 'display name')
    """
    if not isinstance(path, str):
        raise StateError(f"Path must be a string, got {type(path).__name__}", code="INVALID_PATH")
    text = path.strip()
    if not text:
        raise StateError("Path is empty", code="INVALID_PATH", path=path)

    segments: list[Segment] = []
    i = 0
    n = len(text)
    if text[0] == "$":
        i = 1
    elif text[0] not in ".[":
        # Bare dotted path: the first key has no leading dot.
        key, i = _read_key(text, 0, path)
        segments.append(key)

    while i < n:
        ch = text[i]
        if text.startswith("..", i):
            i += 2
            if i < n and text[i] == "[":
                seg, i = _read_bracket(text, i, path)
                if isinstance(seg, (Filter, Descend)):
                    raise StateError("Invalid segment after '..'", code="INVALID_PATH", path=path)
                segments.append(Descend(seg if isinstance(seg, (str, Wildcard)) else str(seg)))
            elif i < n and text[i] == "*":
                segments.append(Descend(WILDCARD))
                i += 1
            else:
                key, i = _read_key(text, i, path)
                segments.append(Descend(key))
        elif ch == ".":
            i += 1
            if i < n and text[i] == "*":
                segments.append(WILDCARD)
                i += 1
            else:
                key, i = _read_key(text, i, path)
                segments.append(key)
        elif ch == "[":
            seg, i = _read_bracket(text, i, path)
            segments.append(seg)
        else:
            raise StateError(f"Unexpected character {ch!r} at {i}", code="INVALID_PATH", path=path)
    return tuple(segments)


def _read_key(text: str, i: int, path: str) -> tuple[str, int]:
    start = i
    while i < len(text) and text[i] not in ".[":
        i += 1
    if i == start:
        raise StateError(f"Empty key at position {start}", code="INVALID_PATH", path=path)
    return text[start:i], i


def _read_bracket(text: str, i: int, path: str) -> tuple[Segment, int]:
    # text[i] == "["
    i += 1
    if i >= len(text):
        raise StateError("Unterminated '['", code="INVALID_PATH", path=path)
    ch = text[i]

    if ch in "'\"":
        quote = ch
        i += 1
        buf: list[str] = []
        while i < len(text) and text[i] != quote:
            if text[i] == "\\" and i + 1 < len(text):
                i += 1
            buf.append(text[i])
            i += 1
        if i >= len(text):
            raise StateError("Unterminated quoted key", code="INVALID_PATH", path=path)
        i += 1
        return "".join(buf), _expect(text, i, "]", path)

    if ch == "*":
        return WILDCARD, _expect(text, i + 1, "]", path)

    if text.startswith("?(", i):
        i += 2
        depth = 1
        start = i
        quote: str | None = None
        while i < len(text):
            c = text[i]
            if quote:
                if c == quote:
                    quote = None
            elif c in "'\"":
                quote = c
            elif c == "(":
                depth += 1
            elif c == ")":
                depth -= 1
                if depth == 0:
                    break
            i += 1
        if depth != 0:
            raise StateError("Unterminated filter expression", code="INVALID_PATH", path=path)
        expression = text[start:i].strip()
        return Filter(expression), _expect(text, i + 1, "]", path)

    end = text.find("]", i)
    if end == -1:
        raise StateError("Unterminated '['", code="INVALID_PATH", path=path)
    raw = text[i:end].strip()
    if not raw:
        raise StateError("Empty brackets", code="INVALID_PATH", path=path)
    try:
        return int(raw), end + 1
    except ValueError:
        return raw, end + 1


def _expect(text: str, i: int, char: str, path: str) -> int:
    if i >= len(text) or text[i] != char:
        raise StateError(f"Expected {char!r} at position {i}", code="INVALID_PATH", path=path)
    return i + 1


def is_definite(segments: tuple[Segment, ...]) -> bool:
    return all(isinstance(s, (str, int)) for s in segments)


def validate_path(path: str) -> bool:
    try:
        parse(path)
    except StateError:
        return False
    return True


def format_path(segments: tuple[Segment, ...] | list[Segment]) -> str:
    """Render segments back into canonical ``$``-rooted form."""
    out = ["$"]
    for seg in segments:
        if isinstance(seg, Wildcard):
            out.append("[*]")
        elif isinstance(seg, int):
            out.append(f"[{seg}]")
        elif isinstance(seg, Descend):
            out.append("..*" if isinstance(seg.key, Wildcard) else f"..{seg.key}")
        elif isinstance(seg, Filter):
            out.append(f"[?({seg.expression})]")
        elif _SIMPLE_KEY.match(seg):
            out.append(f".{seg}")
        else:
            escaped = seg.replace("\\", "\\\\").replace("'", "\\'")
            out.append(f"['{escaped}']")
    return "".join(out)


def normalize(path: str) -> str:
    return format_path(parse(path))


def join(base: str, *keys: str | int) -> str:
    return format_path(parse(base) + tuple(keys))


# --- Reading ---


def _child(node: Any, key: str | int) -> Any:
    """One definite step, or MISSING."""
    if isinstance(node, dict):
        if isinstance(key, int):
            key = str(key)
        return node.get(key, MISSING)
    if isinstance(node, list):
        if isinstance(key, str):
            if not key.lstrip("-").isdigit():
                return MISSING
            key = int(key)
        if -len(node) <= key < len(node):
            return node[key]
    return MISSING


def _resolve(doc: Any, segments: tuple[Segment, ...]) -> Any:
    node = doc
    for seg in segments:
        node = _child(node, seg)
        if node is MISSING:
            return MISSING
    return node


def _children(node: Any) -> Iterator[tuple[str | int, Any]]:
    if isinstance(node, dict):
        yield from node.items()
    elif isinstance(node, list):
        yield from enumerate(node)


def _descendants(loc: tuple[Segment, ...], node: Any) -> Iterator[tuple[tuple[Segment, ...], Any]]:
    yield loc, node
    for key, child in _children(node):
        yield from _descendants(loc + (key,), child)


def _filter_matches(expression: str, item: Any) -> bool:
    from actionrail.processors.expression import ExpressionError, evaluate

    try:
        return bool(evaluate(expression, {"@": item}))
    except ExpressionError:
        return False


def locate(doc: Any, path: str) -> list[tuple[tuple[Segment, ...], Any]]:
    """Every concrete location the path matches, as ``(segments, value)`` pairs."""
    frontier: list[tuple[tuple[Segment, ...], Any]] = [((), doc)]
    for seg in parse(path):
        matched: list[tuple[tuple[Segment, ...], Any]] = []
        for loc, node in frontier:
            if isinstance(seg, Wildcard):
                matched.extend((loc + (k,), v) for k, v in _children(node))
            elif isinstance(seg, Descend):
                for dloc, dnode in _descendants(loc, node):
                    if isinstance(seg.key, Wildcard):
                        matched.extend((dloc + (k,), v) for k, v in _children(dnode))
                    elif isinstance(dnode, dict) and seg.key in dnode:
                        matched.append((dloc + (seg.key,), dnode[seg.key]))
            elif isinstance(seg, Filter):
                matched.extend(
                    (loc + (k,), v) for k, v in _children(node) if _filter_matches(seg.expression, v)
                )
            else:
                value = _child(node, seg)
                if value is not MISSING:
                    if isinstance(node, list) and isinstance(seg, (int, str)):
                        idx = int(seg)
                        seg = idx if idx >= 0 else len(node) + idx
                    matched.append((loc + (seg,), value))
        frontier = matched
    return frontier


def query(doc: Any, path: str) -> list[Any]:
    """All values matching the path, in document order."""
    return [value for _, value in locate(doc, path)]


def query_paths(doc: Any, path: str) -> list[str]:
    return [format_path(loc) for loc, _ in locate(doc, path)]


def get(doc: Any, path: str, default: Any = None) -> Any:
    """Value at a definite path, or the list of matches for a wildcard path."""
    segments = parse(path)
    if not is_definite(segments):
        return query(doc, path)
    value = _resolve(doc, segments)
    return default if value is MISSING else value


def has(doc: Any, path: str) -> bool:
    segments = parse(path)
    if not is_definite(segments):
        return bool(locate(doc, path))
    return _resolve(doc, segments) is not MISSING


def get_multiple(doc: Any, paths: list[str], default: Any = None) -> dict[str, Any]:
    return {p: get(doc, p, default) for p in paths}


# --- Mutating writes (working copies only) ---


def _definite(path: str) -> tuple[str | int, ...]:
    segments = parse(path)
    if not is_definite(segments):
        raise StateError("Path must address a single location", code="INDEFINITE_PATH", path=path)
    return segments


def _container_for(next_seg: str | int) -> Any:
    return [] if isinstance(next_seg, int) or next_seg == APPEND else {}


def set_value(doc: Any, path: str, value: Any) -> Any:
    """Write ``value`` in place, creating missing intermediate containers.

    Returns ``doc``. The root itself cannot be replaced in place.
    """
    segments = _definite(path)
    if not segments:
        raise StateError("Cannot set the root in place", code="INVALID_PATH", path=path)
    node = doc
    for seg, nxt in zip(segments[:-1], segments[1:]):
        child = _child(node, seg)
        if child is MISSING or child is None:
            child = _container_for(nxt)
            _put(node, seg, child, path)
        elif not isinstance(child, (dict, list)):
            raise StateError(
                f"Cannot descend into {type(child).__name__} at {seg!r}",
                code="TYPE_MISMATCH",
                path=path,
            )
        node = child
    _put(node, segments[-1], value, path)
    return doc


def _put(node: Any, key: str | int, value: Any, path: str) -> None:
    if isinstance(node, dict):
        node[str(key) if isinstance(key, int) else key] = value
        return
    if isinstance(node, list):
        if key == APPEND:
            node.append(value)
            return
        if isinstance(key, str) and not key.lstrip("-").isdigit():
            raise StateError(f"Cannot use key {key!r} on a list", code="TYPE_MISMATCH", path=path)
        idx = int(key)
        if idx < 0:
            idx += len(node)
            if idx < 0:
                raise StateError("Index out of range", code="INVALID_INDEX", path=path)
        while len(node) <= idx:
            node.append(None)
        node[idx] = value
        return
    raise StateError(f"Cannot set a key on {type(node).__name__}", code="TYPE_MISMATCH", path=path)


def set_multiple(doc: Any, values: dict[str, Any]) -> Any:
    for path, value in values.items():
        set_value(doc, path, value)
    return doc


def delete_value(doc: Any, path: str) -> bool:
    """Remove the value at ``path`` in place. Returns False when it was absent."""
    segments = _definite(path)
    if not segments:
        raise StateError("Cannot delete the root in place", code="INVALID_PATH", path=path)
    parent = _resolve(doc, segments[:-1])
    last = segments[-1]
    if isinstance(parent, dict):
        key = str(last) if isinstance(last, int) else last
        if key in parent:
            del parent[key]
            return True
    elif isinstance(parent, list) and _child(parent, last) is not MISSING:
        parent.pop(int(last))
        return True
    return False


# --- Persistent writes (path copying) ---


def assoc(doc: Any, path: str, value: Any) -> Any:
    """Return a new document with ``value`` at ``path``; ``doc`` is untouched."""
    return _assoc(doc, _definite(path), value, path)


def _assoc(node: Any, segments: tuple[str | int, ...], value: Any, path: str) -> Any:
    if not segments:
        return value
    head, rest = segments[0], segments[1:]
    if node is MISSING or node is None:
        node = _container_for(head)

    if isinstance(node, list):
        if head == APPEND:
            head = len(node)
        if isinstance(head, str) and not head.lstrip("-").isdigit():
            raise StateError(f"Cannot use key {head!r} on a list", code="TYPE_MISMATCH", path=path)
        idx = int(head)
        if idx < 0:
            idx += len(node)
            if idx < 0:
                raise StateError("Index out of range", code="INVALID_INDEX", path=path)
        copied = list(node)
        while len(copied) <= idx:
            copied.append(None)
        copied[idx] = _assoc(node[idx] if idx < len(node) else MISSING, rest, value, path)
        return copied

    if isinstance(node, dict):
        key = str(head) if isinstance(head, int) else head
        copied_dict = dict(node)
        copied_dict[key] = _assoc(node.get(key, MISSING), rest, value, path)
        return copied_dict

    raise StateError(f"Cannot descend into {type(node).__name__}", code="TYPE_MISMATCH", path=path)


def dissoc(doc: Any, path: str) -> Any:
    """Return a new document without the value at ``path``.

    Removing the root yields an empty object. Raises StateError when the
    path does not exist.
    """
    segments = _definite(path)
    if not segments:
        return {}
    return _dissoc(doc, segments, path)


def _dissoc(node: Any, segments: tuple[str | int, ...], path: str) -> Any:
    head, rest = segments[0], segments[1:]
    child = _child(node, head)
    if child is MISSING:
        raise StateError("Path does not exist", code="PATH_NOT_FOUND", path=path)
    if isinstance(node, dict):
        key = str(head) if isinstance(head, int) else head
        copied = dict(node)
        if rest:
            copied[key] = _dissoc(child, rest, path)
        else:
            del copied[key]
        return copied
    idx = int(head)
    copied_list = list(node)
    if rest:
        copied_list[idx] = _dissoc(child, rest, path)
    else:
        copied_list.pop(idx)
    return copied_list


# --- Enumeration ---


def all_paths(doc: Any, *, leaves_only: bool = False) -> list[str]:
    """Every addressable path in the document, root excluded."""
    paths: list[str] = []
    for loc, node in _descendants((), doc):
        if not loc:
            continue
        if leaves_only and isinstance(node, (dict, list)) and node:
            continue
        paths.append(format_path(loc))
    return paths


def find_paths(doc: Any, predicate: Callable[[Any, str], bool]) -> list[str]:
    """Paths whose value satisfies ``predicate(value, path)``."""
    found: list[str] = []
    for loc, node in _descendants((), doc):
        if not loc:
            continue
        p = format_path(loc)
        if predicate(node, p):
            found.append(p)
    return found


# --- Path relations ---


def _segment_matches(a: Segment, b: Segment) -> bool:
    if isinstance(a, (Wildcard, Descend, Filter)) or isinstance(b, (Wildcard, Descend, Filter)):
        return True
    return str(a) == str(b)


def is_related(a: str, b: str) -> bool:
    """True when one path is an ancestor of, descendant of, or equal to the other."""
    sa, sb = parse(a), parse(b)
    return all(_segment_matches(x, y) for x, y in zip(sa, sb))


def is_ancestor(ancestor: str, path: str) -> bool:
    sa, sp = parse(ancestor), parse(path)
    return len(sa) <= len(sp) and all(_segment_matches(x, y) for x, y in zip(sa, sp))
