"""Line-level diff codec.

Diffs are computed with a longest-common-subsequence table over the line
sequences of two texts and stored as runs of keep/delete/insert operations.
A trailing keep run is implicit, so identical inputs encode to an empty
diff.

Lines are split on ``"\\n"`` only and joined back the same way, which makes
``apply(old, encode(old, new)) == new`` hold for every pair of strings,
including trailing newlines and ``"\\r"`` characters.

Time and memory are O(n*m) in the line counts of the differing middle
section (common prefix and suffix lines are stripped first).
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple, Iterator

from ..utils.errors import CorruptRecordError

DIFF_FORMAT_VERSION = 1


class OpCode(str, Enum):
    """Diff operation kinds"""
    KEEP = "="
    DELETE = "-"
    INSERT = "+"


@dataclass(frozen=True)
class DiffOp:
    """One run of a diff.

    KEEP and DELETE runs carry a line count; INSERT runs carry the lines.
    """
    op: OpCode
    count: int = 0
    lines: Tuple[str, ...] = ()

    @property
    def span(self) -> int:
        """Number of old lines consumed by this run"""
        return 0 if self.op is OpCode.INSERT else self.count


@dataclass(frozen=True)
class Diff:
    """Encoded difference between two texts"""
    old_line_count: int
    ops: Tuple[DiffOp, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not any(op.op is not OpCode.KEEP for op in self.ops)

    @property
    def added(self) -> int:
        return sum(len(op.lines) for op in self.ops if op.op is OpCode.INSERT)

    @property
    def removed(self) -> int:
        return sum(op.count for op in self.ops if op.op is OpCode.DELETE)

    def to_bytes(self) -> bytes:
        """Serialize to compact JSON bytes"""
        ops = []
        for op in self.ops:
            if op.op is OpCode.INSERT:
                ops.append([op.op.value, list(op.lines)])
            else:
                ops.append([op.op.value, op.count])
        doc = {"v": DIFF_FORMAT_VERSION, "n": self.old_line_count, "ops": ops}
        return json.dumps(doc, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Diff':
        """Parse bytes produced by to_bytes"""
        try:
            doc = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CorruptRecordError(f"Diff payload is not valid JSON: {e}", cause=e) from e

        if not isinstance(doc, dict) or doc.get("v") != DIFF_FORMAT_VERSION:
            raise CorruptRecordError("Diff payload has an unknown format version")

        old_line_count = doc.get("n")
        raw_ops = doc.get("ops")
        if not isinstance(old_line_count, int) or old_line_count < 0 or not isinstance(raw_ops, list):
            raise CorruptRecordError("Diff payload header is malformed")

        ops = []
        for entry in raw_ops:
            if not isinstance(entry, list) or len(entry) != 2:
                raise CorruptRecordError("Diff operation is malformed")
            code, arg = entry
            try:
                op = OpCode(code)
            except ValueError as e:
                raise CorruptRecordError(f"Unknown diff operation: {code!r}", cause=e) from e

            if op is OpCode.INSERT:
                if not isinstance(arg, list) or not all(isinstance(line, str) for line in arg):
                    raise CorruptRecordError("Insert run must carry a list of lines")
                ops.append(DiffOp(op, lines=tuple(arg)))
            else:
                if not isinstance(arg, int) or arg <= 0:
                    raise CorruptRecordError("Keep/delete run must carry a positive count")
                ops.append(DiffOp(op, count=arg))

        return cls(old_line_count=old_line_count, ops=tuple(ops))


def split_lines(text: str) -> List[str]:
    """Split text into lines; the empty string has no lines."""
    return text.split("\n") if text else []


def join_lines(lines: List[str]) -> str:
    return "\n".join(lines)


class DiffCodec:
    """Computes and applies line-level diffs"""

    def encode(self, old: str, new: str) -> Diff:
        """Diff ``old`` against ``new``"""
        a = split_lines(old)
        b = split_lines(new)

        prefix = 0
        limit = min(len(a), len(b))
        while prefix < limit and a[prefix] == b[prefix]:
            prefix += 1

        suffix = 0
        while (suffix < limit - prefix
               and a[len(a) - 1 - suffix] == b[len(b) - 1 - suffix]):
            suffix += 1

        middle_a = a[prefix:len(a) - suffix]
        middle_b = b[prefix:len(b) - suffix]

        ops: List[DiffOp] = []
        if prefix:
            ops.append(DiffOp(OpCode.KEEP, count=prefix))
        ops.extend(self._coalesce(self._lcs_walk(middle_a, middle_b)))

        # Trailing keep runs (including the stripped suffix) are implicit
        while ops and ops[-1].op is OpCode.KEEP:
            ops.pop()

        return Diff(old_line_count=len(a), ops=tuple(self._merge_adjacent(ops)))

    def apply(self, old: str, diff: Diff) -> str:
        """Apply ``diff`` to ``old`` and return the new text"""
        lines = split_lines(old)
        if len(lines) != diff.old_line_count:
            raise CorruptRecordError(
                f"Diff expects {diff.old_line_count} base lines, got {len(lines)}"
            )

        out: List[str] = []
        pos = 0
        for op in diff.ops:
            if op.op is OpCode.INSERT:
                out.extend(op.lines)
                continue
            if pos + op.count > len(lines):
                raise CorruptRecordError("Diff run extends past the end of the base text")
            if op.op is OpCode.KEEP:
                out.extend(lines[pos:pos + op.count])
            pos += op.count

        out.extend(lines[pos:])
        return join_lines(out)

    def render(self, old: str, diff: Diff) -> str:
        """Render a diff as ``-N: line`` / ``+N: line`` text.

        Line numbers are 1-based positions in the old text for deletions and
        in the new text for insertions.
        """
        lines = split_lines(old)
        rendered = []
        old_pos = 0
        new_pos = 0
        for op in diff.ops:
            if op.op is OpCode.KEEP:
                old_pos += op.count
                new_pos += op.count
            elif op.op is OpCode.DELETE:
                for line in lines[old_pos:old_pos + op.count]:
                    old_pos += 1
                    rendered.append(f"-{old_pos}: {line}")
            else:
                for line in op.lines:
                    new_pos += 1
                    rendered.append(f"+{new_pos}: {line}")
        return "\n".join(rendered)

    def _lcs_walk(self, a: List[str], b: List[str]) -> Iterator[Tuple[OpCode, str]]:
        """Yield per-line operations along one longest common subsequence"""
        n, m = len(a), len(b)
        if n == 0:
            for line in b:
                yield OpCode.INSERT, line
            return
        if m == 0:
            for line in a:
                yield OpCode.DELETE, line
            return

        # table[i][j] = LCS length of a[i:] and b[j:]
        table = [[0] * (m + 1) for _ in range(n + 1)]
        for i in range(n - 1, -1, -1):
            row = table[i]
            below = table[i + 1]
            ai = a[i]
            for j in range(m - 1, -1, -1):
                if ai == b[j]:
                    row[j] = below[j + 1] + 1
                else:
                    row[j] = below[j] if below[j] >= row[j + 1] else row[j + 1]

        i = j = 0
        while i < n and j < m:
            if a[i] == b[j]:
                yield OpCode.KEEP, a[i]
                i += 1
                j += 1
            elif table[i + 1][j] >= table[i][j + 1]:
                yield OpCode.DELETE, a[i]
                i += 1
            else:
                yield OpCode.INSERT, b[j]
                j += 1
        while i < n:
            yield OpCode.DELETE, a[i]
            i += 1
        while j < m:
            yield OpCode.INSERT, b[j]
            j += 1

    def _coalesce(self, steps: Iterator[Tuple[OpCode, str]]) -> List[DiffOp]:
        ops: List[DiffOp] = []
        current = None
        buffer: List[str] = []
        for code, line in steps:
            if code is not current and current is not None:
                ops.append(self._make_op(current, buffer))
                buffer = []
            current = code
            buffer.append(line)
        if current is not None:
            ops.append(self._make_op(current, buffer))
        return ops

    def _merge_adjacent(self, ops: List[DiffOp]) -> List[DiffOp]:
        merged: List[DiffOp] = []
        for op in ops:
            if merged and merged[-1].op is op.op:
                last = merged.pop()
                op = DiffOp(op.op, count=last.count + op.count, lines=last.lines + op.lines)
            merged.append(op)
        return merged

    @staticmethod
    def _make_op(code: OpCode, lines: List[str]) -> DiffOp:
        if code is OpCode.INSERT:
            return DiffOp(code, lines=tuple(lines))
        return DiffOp(code, count=len(lines))
