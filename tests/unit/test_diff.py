"""
Unit tests for the line diff codec.
"""

import random

import pytest

from agent_checkpoints.checkpoint.diff import DiffCodec, Diff, DiffOp, OpCode
from agent_checkpoints.utils.errors import CorruptRecordError


PAIRS = [
    ("", ""),
    ("", "a\nb"),
    ("a\nb", ""),
    ("hello", "hello world"),
    ("a\nb\nc", "a\nb\nc"),
    ("a\nb", "a\nb\n"),
    ("a\nb\n", "a\nb"),
    ("one\r\ntwo\r\n", "one\r\nTWO\r\n"),
    ("a\nb\nc\nd\ne", "e\nd\nc\nb\na"),
    ("x\n\n\ny", "\n\nx\ny\n\n"),
    ("same\nsame\nsame", "same\nother\nsame\nsame"),
    ("def f():\n    return 1\n", "def f():\n    x = 2\n    return x\n"),
]

LINE_ALPHABET = ["", "a", "b", "c", "x = 1", "    return x", " ", "\t"]


def random_text(rng: random.Random) -> str:
    lines = [rng.choice(LINE_ALPHABET) for _ in range(rng.randint(0, 12))]
    text = rng.choice(["\n", "\r\n"]).join(lines)
    if rng.random() < 0.3:
        text += "\n"
    return text


class TestDiffCodec:
    """Test DiffCodec encode/apply."""

    @pytest.fixture
    def codec(self):
        return DiffCodec()

    @pytest.mark.parametrize("old,new", PAIRS)
    def test_apply_inverts_encode(self, codec, old, new):
        """apply(old, encode(old, new)) reproduces new exactly."""
        assert codec.apply(old, codec.encode(old, new)) == new

    @pytest.mark.parametrize("seed", range(5))
    def test_apply_inverts_encode_on_random_pairs(self, codec, seed):
        rng = random.Random(seed)
        for _ in range(200):
            old, new = random_text(rng), random_text(rng)
            assert codec.apply(old, codec.encode(old, new)) == new, (old, new)

    def test_identical_inputs_give_empty_diff(self, codec):
        diff = codec.encode("a\nb\nc", "a\nb\nc")

        assert diff.is_empty
        assert diff.ops == ()
        assert diff.old_line_count == 3

    def test_empty_old_inserts_everything(self, codec):
        diff = codec.encode("", "a\nb")

        assert diff.old_line_count == 0
        assert diff.ops == (DiffOp(OpCode.INSERT, lines=("a", "b")),)

    def test_single_line_change(self, codec):
        diff = codec.encode("a\nb\nc", "a\nx\nc")

        assert diff.ops == (
            DiffOp(OpCode.KEEP, count=1),
            DiffOp(OpCode.DELETE, count=1),
            DiffOp(OpCode.INSERT, lines=("x",)),
        )
        assert diff.added == 1
        assert diff.removed == 1

    def test_serialization_roundtrip(self, codec):
        diff = codec.encode("alpha\nbeta\ngamma", "alpha\nBETA\ngamma\ndelta")
        restored = Diff.from_bytes(diff.to_bytes())

        assert restored == diff

    def test_apply_rejects_wrong_base(self, codec):
        diff = codec.encode("a\nb\nc", "a\nc")

        with pytest.raises(CorruptRecordError):
            codec.apply("a\nb", diff)

    def test_apply_rejects_run_past_end(self, codec):
        diff = Diff(old_line_count=1, ops=(DiffOp(OpCode.KEEP, count=5),))

        with pytest.raises(CorruptRecordError):
            codec.apply("only", diff)

    @pytest.mark.parametrize("payload", [
        b"not json",
        b"\xff\xfe",
        b'{"v": 99, "n": 0, "ops": []}',
        b'{"v": 1, "n": -1, "ops": []}',
        b'{"v": 1, "n": 1, "ops": [["?", 1]]}',
        b'{"v": 1, "n": 1, "ops": [["=", 0]]}',
        b'{"v": 1, "n": 1, "ops": [["+", "x"]]}',
    ])
    def test_from_bytes_rejects_malformed(self, payload):
        with pytest.raises(CorruptRecordError):
            Diff.from_bytes(payload)

    def test_render(self, codec):
        old = "a\nb\nc"
        diff = codec.encode(old, "a\nx\nc")

        assert codec.render(old, diff) == "-2: b\n+2: x"

    def test_diff_is_smaller_than_content_for_small_edits(self, codec):
        old = "\n".join(f"line {i}" for i in range(200))
        new = old.replace("line 100", "line one hundred")

        assert len(codec.encode(old, new).to_bytes()) < len(new.encode()) // 10
