"""Tests for context flattening and entropy."""

import math

from tableguard.security.detection.context import clip_field, flatten_context, shannon_entropy


def _nested(depth: int, leaf: str = "x") -> dict:
    value: object = leaf
    for _ in range(depth):
        value = {"a": value}
    return value


class TestFlattenContext:
    def test_dotted_paths_in_order(self):
        context = {"a": {"b": "x"}, "c": ["y", 3, {"d": "z"}], "e": None}

        assert flatten_context(context) == {"a.b": "x", "c.0": "y", "c.2.d": "z"}
        assert list(flatten_context(context)) == ["a.b", "c.0", "c.2.d"]

    def test_non_strings_skipped(self):
        assert flatten_context({"n": 1, "f": 1.5, "b": True, "s": "ok"}) == {"s": "ok"}

    def test_depth_cap(self):
        assert flatten_context(_nested(5), max_depth=32) == {"a.a.a.a.a": "x"}
        assert flatten_context(_nested(40), max_depth=32) == {}

    def test_hostile_nesting_does_not_recurse(self):
        # Far deeper than the interpreter recursion limit
        assert flatten_context(_nested(5000)) == {}

    def test_field_cap(self):
        context = {f"f{i}": "v" for i in range(600)}
        fields = flatten_context(context, max_fields=512)

        assert len(fields) == 512
        assert "f0" in fields

    def test_long_fields_keep_head_and_tail(self):
        value = "HEAD" + "x" * 100_000 + "TAIL"

        clipped = flatten_context({"notes": value}, max_field_chars=1000)["notes"]

        assert len(clipped) <= 1000
        assert clipped.startswith("HEAD")
        assert clipped.endswith("TAIL")

    def test_short_fields_untouched(self):
        assert flatten_context({"q": "x" * 4096})["q"] == "x" * 4096


class TestClipField:
    def test_within_limit(self):
        assert clip_field("abc", 64) == "abc"

    def test_clipped(self):
        assert clip_field("a" * 50 + "b" * 50, 11) == "aaaaa\nbbbbb"


class TestShannonEntropy:
    def test_uniform(self):
        assert shannon_entropy("abab") == 1.0
        assert math.isclose(shannon_entropy("abcd"), 2.0)

    def test_repeated_character(self):
        assert shannon_entropy("a" * 300) == 0.0

    def test_empty(self):
        assert shannon_entropy("") == 0.0
