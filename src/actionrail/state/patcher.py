"""Patch application, validation, reversal and generation.

A patch is ``{op, path, value?}`` with ``op`` one of:

    add       write ``value`` at ``path``, creating missing parents. When the
              parent is a list the value is inserted at the index (an index
              equal to the length, or ``-``, appends), so removals can be
              reversed exactly.
    replace   overwrite an existing value; the path must exist.
    remove    delete an existing value; the path must exist.

``apply_patches`` never mutates its input. Each write copies only the
containers along the patched path (see ``jsonpath.assoc``), and a batch is
atomic: if any patch fails, the caller still holds the untouched original.

Generated patches replace changed arrays wholesale rather than diffing
their elements.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable

from actionrail.core.errors import StateError
from actionrail.core.models import MISSING, PatchOp, StatePatch
from actionrail.processors import jsonpath

PatchLike = StatePatch | dict[str, Any]


def coerce_patch(patch: PatchLike) -> StatePatch:
    if isinstance(patch, StatePatch):
        return patch
    try:
        return StatePatch.from_dict(patch)
    except (KeyError, ValueError) as exc:
        raise StateError(f"Malformed patch {patch!r}", code="INVALID_PATCH") from exc


def create_patch(op: PatchOp | str, path: str, value: Any = MISSING) -> StatePatch:
    return StatePatch(op=PatchOp(op), path=jsonpath.normalize(path), value=value)


def _segments(patch: StatePatch) -> tuple[Any, ...]:
    segments = jsonpath.parse(patch.path)
    if not jsonpath.is_definite(segments):
        raise StateError("Patch paths must address a single location", code="INDEFINITE_PATH", path=patch.path)
    return segments


def _check(doc: Any, patch: StatePatch) -> None:
    segments = _segments(patch)
    if patch.op in (PatchOp.ADD, PatchOp.REPLACE) and not patch.has_value:
        raise StateError(f"'{patch.op.value}' requires a value", code="MISSING_VALUE", path=patch.path)
    if patch.op in (PatchOp.REPLACE, PatchOp.REMOVE) and segments and not jsonpath.has(doc, patch.path):
        raise StateError(
            f"Cannot {patch.op.value} {patch.path}: path does not exist",
            code="PATH_NOT_FOUND",
            path=patch.path,
        )


def _insert_index(parent: list[Any], last: Any, path: str) -> int:
    if last == jsonpath.APPEND:
        return len(parent)
    if isinstance(last, str) and not last.lstrip("-").isdigit():
        raise StateError(f"Cannot use key {last!r} on a list", code="TYPE_MISMATCH", path=path)
    idx = int(last)
    if idx < 0:
        idx += len(parent)
    if not 0 <= idx <= len(parent):
        raise StateError("Index out of range", code="INVALID_INDEX", path=path)
    return idx


def apply_patch(doc: Any, patch: PatchLike) -> Any:
    """Apply one patch and return the new document."""
    patch = coerce_patch(patch)
    _check(doc, patch)
    segments = _segments(patch)

    if patch.op is PatchOp.REMOVE:
        return jsonpath.dissoc(doc, patch.path)

    value = copy.deepcopy(patch.value)
    if not segments:
        return value

    if patch.op is PatchOp.ADD:
        parent = jsonpath.get(doc, jsonpath.format_path(segments[:-1]), MISSING)
        if isinstance(parent, list):
            idx = _insert_index(parent, segments[-1], patch.path)
            inserted = [*parent[:idx], value, *parent[idx:]]
            return jsonpath.assoc(doc, jsonpath.format_path(segments[:-1]), inserted)

    return jsonpath.assoc(doc, patch.path, value)


def apply_patches(doc: Any, patches: Iterable[PatchLike]) -> Any:
    """Apply a batch in order. Raises StateError (naming the failing patch) and leaves ``doc`` as is."""
    result = doc
    for i, patch in enumerate(patches):
        patch = coerce_patch(patch)
        try:
            result = apply_patch(result, patch)
        except StateError as exc:
            raise StateError(
                f"Patch {i} ({patch.op.value} {patch.path}) failed: {exc.message}",
                code=exc.code,
                path=patch.path,
            ) from exc
    return result


def test_patch(doc: Any, patch: PatchLike) -> bool:
    """Whether ``patch`` would apply cleanly to ``doc``."""
    try:
        apply_patch(doc, patch)
    except StateError:
        return False
    return True


def validate_patches(doc: Any, patches: Iterable[PatchLike]) -> list[str]:
    """Every problem with the batch, checked against the document as it evolves."""
    errors: list[str] = []
    current = doc
    for i, raw in enumerate(patches):
        try:
            patch = coerce_patch(raw)
            current = apply_patch(current, patch)
        except StateError as exc:
            errors.append(f"Patch {i}: {exc.message}")
    return errors


def reverse_patches(patches: Iterable[PatchLike], doc: Any) -> list[StatePatch]:
    """Patches that undo ``patches`` when applied to their result.

    ``doc`` is the document the forward patches were applied to.
    """
    inverse: list[StatePatch] = []
    current = doc
    for raw in patches:
        patch = coerce_patch(raw)
        segments = _segments(patch)
        previous = jsonpath.get(current, patch.path, MISSING) if segments else current

        if patch.op is PatchOp.REMOVE:
            inverse.append(StatePatch(PatchOp.ADD, patch.path, previous))
        elif patch.op is PatchOp.REPLACE:
            inverse.append(StatePatch(PatchOp.REPLACE, patch.path, previous))
        else:
            parent = jsonpath.get(current, jsonpath.format_path(segments[:-1]), MISSING) if segments else MISSING
            if not segments:
                inverse.append(StatePatch(PatchOp.REPLACE, "$", current))
            elif isinstance(parent, list):
                idx = _insert_index(parent, segments[-1], patch.path)
                inverse.append(StatePatch(PatchOp.REMOVE, jsonpath.format_path((*segments[:-1], idx))))
            elif previous is not MISSING:
                inverse.append(StatePatch(PatchOp.REPLACE, patch.path, previous))
            else:
                # Remove the highest ancestor the add had to create.
                created = segments
                for depth in range(1, len(segments) + 1):
                    if not jsonpath.has(current, jsonpath.format_path(segments[:depth])):
                        created = segments[:depth]
                        break
                inverse.append(StatePatch(PatchOp.REMOVE, jsonpath.format_path(created)))
        current = apply_patch(current, patch)
    inverse.reverse()
    return inverse


def optimize_patches(patches: Iterable[PatchLike]) -> list[StatePatch]:
    """Collapse repeated writes to the same object key into one.

    A write is folded into an earlier add/replace of the same path when no
    patch in between touched that path or its ancestors/descendants. List
    index writes are left alone because inserts shift positions.
    """
    result: list[StatePatch] = []
    for raw in patches:
        patch = coerce_patch(raw)
        segments = jsonpath.parse(patch.path)
        if patch.op is not PatchOp.REMOVE and segments and not isinstance(segments[-1], int):
            normalized = jsonpath.normalize(patch.path)
            for i in range(len(result) - 1, -1, -1):
                earlier = result[i]
                if not jsonpath.is_related(earlier.path, patch.path):
                    continue
                if earlier.op is not PatchOp.REMOVE and jsonpath.normalize(earlier.path) == normalized:
                    del result[i]
                    patch = StatePatch(earlier.op, patch.path, patch.value)
                break
        result.append(patch)
    return result


def _differs(a: Any, b: Any) -> bool:
    return type(a) is not type(b) or a != b


def generate_patches(old: Any, new: Any, path: str = "$") -> list[StatePatch]:
    """Patches turning ``old`` into ``new``. Changed lists are replaced whole."""
    base = jsonpath.parse(path)
    patches: list[StatePatch] = []
    _generate(old, new, base, patches)
    return patches


def _generate(old: Any, new: Any, segments: tuple[Any, ...], out: list[StatePatch]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in old:
            if key not in new:
                out.append(StatePatch(PatchOp.REMOVE, jsonpath.format_path(segments + (key,))))
        for key, value in new.items():
            child = segments + (key,)
            if key not in old:
                out.append(StatePatch(PatchOp.ADD, jsonpath.format_path(child), value))
            else:
                _generate(old[key], value, child, out)
        return
    if _differs(old, new):
        out.append(StatePatch(PatchOp.REPLACE, jsonpath.format_path(segments), new))


def create_merge_patches(doc: Any, path: str, value: Any) -> list[StatePatch]:
    """Patches that deep-merge ``value`` into whatever is at ``path``."""
    current = jsonpath.get(doc, path, MISSING)
    if isinstance(current, dict) and isinstance(value, dict):
        merged = dict(current)
        for key, item in value.items():
            existing = current.get(key, MISSING)
            if isinstance(existing, dict) and isinstance(item, dict):
                merged[key] = _merged(existing, item)
            else:
                merged[key] = item
        return generate_patches(current, merged, path)
    if isinstance(current, list) and isinstance(value, list):
        return [StatePatch(PatchOp.REPLACE, jsonpath.normalize(path), [*current, *value])]
    op = PatchOp.ADD if current is MISSING else PatchOp.REPLACE
    return [StatePatch(op, jsonpath.normalize(path), value)]


def _merged(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    out = dict(a)
    for key, item in b.items():
        existing = a.get(key, MISSING)
        out[key] = _merged(existing, item) if isinstance(existing, dict) and isinstance(item, dict) else item
    return out


def changed_paths(patches: Iterable[PatchLike]) -> list[str]:
    return [coerce_patch(p).path for p in patches]
