"""Deep merge and nested path helpers."""

from __future__ import annotations

import pytest

from gochi.sync.merge import (
    build_nested_patch,
    changed_paths,
    deep_merge,
    delete_nested,
    get_nested,
    leaf_paths,
    paths_overlap,
    set_nested,
)


class TestDeepMerge:
    def test_nested_dicts_merge(self):
        target = {"a": {"b": 1, "c": 2}, "x": 1}
        source = {"a": {"c": 3, "d": 4}}
        assert deep_merge(target, source) == {"a": {"b": 1, "c": 3, "d": 4}, "x": 1}

    def test_lists_are_replaced(self):
        assert deep_merge({"items": [1, 2, 3]}, {"items": [9]}) == {"items": [9]}

    def test_scalar_overwrites_dict(self):
        assert deep_merge({"a": {"b": 1}}, {"a": 5}) == {"a": 5}

    def test_inputs_not_mutated(self):
        target = {"a": {"b": 1}}
        source = {"a": {"c": [1]}}
        result = deep_merge(target, source)
        result["a"]["c"].append(2)
        assert target == {"a": {"b": 1}}
        assert source == {"a": {"c": [1]}}

    def test_disjoint_patches_commute(self):
        state = {"user": {"name": "n", "stats": {"hp": 3}}, "level": 1}
        p1 = {"user": {"stats": {"mp": 7}}}
        p2 = {"level": 2, "user": {"name": "m"}}
        p3 = {"inventory": {"gold": 10}}
        assert deep_merge(deep_merge(state, p1), p2) == deep_merge(deep_merge(state, p2), p1)
        left = deep_merge(deep_merge(deep_merge(state, p1), p2), p3)
        right = deep_merge(state, deep_merge(p1, deep_merge(p2, p3)))
        assert left == right


class TestPaths:
    def test_build_nested_patch(self):
        assert build_nested_patch("userData.points", {"amount": 5}) == {"userData": {"points": {"amount": 5}}}

    def test_root_patch_must_be_dict(self):
        assert build_nested_patch("", {"a": 1}) == {"a": 1}
        with pytest.raises(TypeError):
            build_nested_patch("", 5)

    def test_get_nested(self):
        state = {"a": {"b": {"c": 1}}}
        assert get_nested(state, "a.b.c") == 1
        assert get_nested(state, "a.x", "default") == "default"
        assert get_nested(state, "a.b.c.d") is None

    def test_set_nested(self):
        assert set_nested({"a": {"b": 1}}, "a.c", 2) == {"a": {"b": 1, "c": 2}}

    def test_delete_nested(self):
        state = {"a": {"b": 1, "c": 2}}
        assert delete_nested(state, "a.b") == {"a": {"c": 2}}
        assert delete_nested(state, "a.zzz") == state
        assert delete_nested(state, "q.r") == state
        assert state == {"a": {"b": 1, "c": 2}}

    def test_leaf_and_changed_paths(self):
        assert leaf_paths({"a": {"b": 1, "c": {}}, "d": [1]}) == {"a.b", "a.c", "d"}
        base = {"a": {"b": 1}, "gone": 1}
        current = {"a": {"b": 2}, "new": 1}
        assert changed_paths(base, current) == {"a.b", "gone", "new"}

    def test_paths_overlap(self):
        assert paths_overlap("a.b", "a.b")
        assert paths_overlap("a", "a.b")
        assert paths_overlap("a.b.c", "a.b")
        assert not paths_overlap("a.b", "a.bc")
