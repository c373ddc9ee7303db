"""Per-resource checkpoint history

A chain is an ordered list of records for one key. Index 0 is always a FULL
base; later records are either FULL anchors or DIFFs against the previous
index. Content at index K is rebuilt from the nearest FULL record at or
before K by applying the diffs that follow it.

Every mutating method computes its result before touching ``self`` and then
swaps the new record list in, so a failure leaves the chain unchanged.
"""

import copy
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, List, Tuple, Set, Iterable, Dict, Any

from .compression import CompressionCodec
from .diff import DiffCodec, Diff
from .models import (
    CheckpointRecord,
    RecordKind,
    RecordBody,
    Snapshot,
    Patch,
    VcsRef,
    content_hash,
    utcnow,
)
from ..utils.errors import (
    NotFoundError,
    BaseProtectedError,
    InvalidRangeError,
    CorruptRecordError,
    ValidationError,
)
from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ANCHOR_INTERVAL = 10
_CACHE_SIZE = 8


@dataclass
class CompactResult:
    """Outcome of a compaction pass on one chain"""
    chain_key: str
    records_before: int
    records_after: int
    removed: List[int] = field(default_factory=list)
    rewritten: List[int] = field(default_factory=list)
    index_map: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_key": self.chain_key,
            "records_before": self.records_before,
            "records_after": self.records_after,
            "removed": list(self.removed),
            "rewritten": list(self.rewritten),
        }


class CheckpointChain:
    """Ordered checkpoint history for one chain key"""

    def __init__(
        self,
        key: str,
        anchor_interval: int = DEFAULT_ANCHOR_INTERVAL,
        diff_codec: Optional[DiffCodec] = None,
        compression: Optional[CompressionCodec] = None,
        records: Optional[Iterable[CheckpointRecord]] = None,
        cursor: Optional[int] = None
    ):
        """Initialize chain

        Args:
            key: Chain key (typically a file path)
            anchor_interval: Store a FULL record at every index divisible by this
            diff_codec: Diff codec
            compression: Compression codec and threshold policy
            records: Existing records, in order
            cursor: Undo cursor (defaults to the tail)
        """
        if anchor_interval < 1:
            raise ValidationError("anchor_interval", anchor_interval, "must be >= 1")

        self.key = key
        self.anchor_interval = anchor_interval
        self.diff_codec = diff_codec or DiffCodec()
        self.compression = compression or CompressionCodec()

        self._records: List[CheckpointRecord] = list(records or [])
        self._renumber(self._records)
        if self._records and not self._records[0].is_full:
            raise CorruptRecordError(f"Chain {key} does not start with a full record", chain_key=key)

        if cursor is None or not -1 <= cursor < len(self._records):
            cursor = len(self._records) - 1
        self._cursor = cursor
        self.edit_count = 0

        self._dirty: Set[str] = set()
        self._removed: Set[str] = set()
        self._cache: "OrderedDict[str, str]" = OrderedDict()

    # Read access

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> Tuple[CheckpointRecord, ...]:
        return tuple(self._records)

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def tail_index(self) -> int:
        return len(self._records) - 1

    @property
    def is_empty(self) -> bool:
        return not self._records

    @property
    def storage_bytes(self) -> int:
        return sum(r.size_bytes for r in self._records)

    @property
    def raw_bytes(self) -> int:
        return sum(r.raw_size for r in self._records)

    def get(self, index: int) -> CheckpointRecord:
        self._check_index(index)
        return self._records[index]

    def current_record(self) -> Optional[CheckpointRecord]:
        if self._cursor < 0:
            return None
        return self._records[self._cursor]

    def reconstruct(self, index: int) -> str:
        """Rebuild the content captured at ``index``

        Raises:
            NotFoundError: index out of range
            CorruptRecordError: a payload failed to decode or the rebuilt
                content does not match the recorded hash
        """
        records = self._records
        self._check_index(index, records)

        target = records[index]
        cached = self._cache_get(target.record_id)
        if cached is not None:
            return cached

        start = index
        content: Optional[str] = None
        while start >= 0:
            record = records[start]
            cached = self._cache_get(record.record_id)
            if cached is not None:
                content = cached
                break
            if record.is_full:
                break
            start -= 1

        if start < 0:
            raise CorruptRecordError(
                f"No full record at or before index {index}",
                chain_key=self.key
            )

        try:
            if content is None:
                content = self._body_content(self._decode(records[start]), None)
            for i in range(start + 1, index + 1):
                content = self._body_content(self._decode(records[i]), content)
        except CorruptRecordError as e:
            e.context.chain_key = e.context.chain_key or self.key
            e.context.metadata.setdefault("index", index)
            logger.error("reconstruct_failed", chain_key=self.key, index=index, error=e.message)
            raise

        if content_hash(content) != target.content_hash:
            logger.error("reconstruct_hash_mismatch", chain_key=self.key, index=index)
            raise CorruptRecordError(
                f"Reconstructed content at index {index} does not match its hash",
                chain_key=self.key
            )

        self._cache_put(target.record_id, content)
        return content

    def head_hash(self) -> Optional[str]:
        """Content hash at the cursor"""
        record = self.current_record()
        return record.content_hash if record else None

    # Mutations

    def append(
        self,
        content: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        vcs_ref: Optional[VcsRef] = None,
        force_full: bool = False,
        created_at: Optional[datetime] = None,
        edit_count: int = 0
    ) -> CheckpointRecord:
        """Append a checkpoint after the cursor

        Records past the cursor (the redo range) are discarded first.
        """
        base_index = self._cursor
        kept = self._records[:base_index + 1]
        discarded = self._records[base_index + 1:]
        index = len(kept)

        full = index == 0 or force_full or index % self.anchor_interval == 0
        if full:
            kind = RecordKind.FULL
            raw = content.encode("utf-8")
        else:
            kind = RecordKind.DIFF
            raw = self.diff_codec.encode(self.reconstruct(base_index), content).to_bytes()

        payload, compressed = self.compression.pack(raw)
        record = CheckpointRecord(
            record_id=uuid.uuid4().hex,
            chain_key=self.key,
            sequence_index=index,
            created_at=created_at or utcnow(),
            kind=kind,
            payload=payload,
            compressed=compressed,
            raw_size=len(raw),
            content_hash=content_hash(content),
            name=name,
            description=description,
            tags=set(tags or ()),
            vcs_ref=vcs_ref,
            edit_count=edit_count,
        )

        self._records = kept + [record]
        self._cursor = index
        self._dirty.add(record.record_id)
        self._forget(discarded)
        self._cache_put(record.record_id, content)

        logger.debug(
            "chain_appended",
            chain_key=self.key,
            index=index,
            kind=kind.value,
            size_bytes=record.size_bytes,
            discarded=len(discarded)
        )
        return record

    def delete_at(self, index: int) -> CheckpointRecord:
        """Delete the tail record

        Raises:
            NotFoundError: index out of range
            BaseProtectedError: index 0 while later records exist
            InvalidRangeError: index is not the tail
        """
        self._check_index(index)
        if index == 0 and len(self._records) > 1:
            raise BaseProtectedError(chain_key=self.key)
        if index != self.tail_index:
            raise InvalidRangeError(
                f"Only the tail checkpoint ({self.tail_index}) can be deleted, got {index}",
                chain_key=self.key
            )

        removed = self._records[index]
        self._records = self._records[:index]
        self._cursor = min(self._cursor, len(self._records) - 1)
        self._forget([removed])
        return removed

    def merge_range(
        self,
        start: int,
        end: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None
    ) -> CheckpointRecord:
        """Replace ``[start, end]`` with one FULL record holding the content at ``end``"""
        if not (0 <= start < end < len(self._records)):
            raise InvalidRangeError(
                f"Invalid merge range [{start}, {end}] for {len(self._records)} checkpoints",
                chain_key=self.key
            )

        content = self.reconstruct(end)
        span = self._records[start:end + 1]
        last = span[-1]

        merged_tags: Set[str] = set(tags or ())
        for record in span:
            merged_tags |= record.tags

        raw = content.encode("utf-8")
        payload, compressed = self.compression.pack(raw)
        merged = CheckpointRecord(
            record_id=uuid.uuid4().hex,
            chain_key=self.key,
            sequence_index=start,
            created_at=last.created_at,
            kind=RecordKind.FULL,
            payload=payload,
            compressed=compressed,
            raw_size=len(raw),
            content_hash=last.content_hash,
            name=name or f"Merged {end - start + 1} checkpoints",
            description=description,
            tags=merged_tags,
            vcs_ref=last.vcs_ref,
            edit_count=sum(r.edit_count for r in span),
        )

        records = self._records[:start] + [merged] + self._records[end + 1:]
        self._renumber(records)

        cursor = self._cursor
        if start <= cursor <= end:
            cursor = start
        elif cursor > end:
            cursor -= end - start

        self._records = records
        self._cursor = cursor
        self._dirty.add(merged.record_id)
        self._forget(span)
        self._cache_put(merged.record_id, content)
        return merged

    def tag(self, index: int, tags: Iterable[str]) -> CheckpointRecord:
        """Add tags to a record (set union)"""
        record = self.get(index)
        new_tags = set(tags) - record.tags
        if not new_tags:
            return record

        tagged = replace(record, tags=record.tags | new_tags)
        records = list(self._records)
        records[index] = tagged
        self._records = records
        self._dirty.add(tagged.record_id)
        return tagged

    def undo(self) -> str:
        if self.is_empty:
            raise NotFoundError(f"No checkpoints for {self.key}", chain_key=self.key)
        cursor = max(0, self._cursor - 1)
        content = self.reconstruct(cursor)
        self._cursor = cursor
        return content

    def redo(self) -> str:
        if self.is_empty:
            raise NotFoundError(f"No checkpoints for {self.key}", chain_key=self.key)
        cursor = min(self.tail_index, self._cursor + 1)
        content = self.reconstruct(cursor)
        self._cursor = cursor
        return content

    def set_cursor(self, index: int) -> None:
        self._check_index(index)
        self._cursor = index

    def optimize(self, anchor_every: int = DEFAULT_ANCHOR_INTERVAL) -> List[int]:
        """Rewrite every ``anchor_every``-th record to FULL

        A rewritten record gets a new id; the old id is reported as removed.

        Returns:
            Indices that were rewritten
        """
        if anchor_every < 1:
            raise ValidationError("anchor_every", anchor_every, "must be >= 1")

        rewrites = {}
        for index in range(anchor_every, len(self._records), anchor_every):
            record = self._records[index]
            if not record.is_full:
                content = self.reconstruct(index)
                rewrites[index] = (self._as_full(record, content), content)

        if rewrites:
            records = list(self._records)
            replaced = [records[index] for index in rewrites]
            for index, (record, _) in rewrites.items():
                records[index] = record
            self._records = records
            self._forget(replaced)
            for record, content in rewrites.values():
                self._dirty.add(record.record_id)
                self._cache_put(record.record_id, content)

        return sorted(rewrites)

    def compact(self, keep_every_nth: int, max_records: int) -> CompactResult:
        """Drop records while preserving content at every retained index

        Keeps the base, the tail and the cursor. Of the rest, keeps every
        ``keep_every_nth`` record counting back from the tail, then drops the
        oldest optional records until at most ``max_records`` remain. A DIFF
        whose predecessor was dropped is rewritten to FULL under a new id.
        """
        if keep_every_nth < 1:
            raise ValidationError("keep_every_nth", keep_every_nth, "must be >= 1")
        if max_records < 1:
            raise ValidationError("max_records", max_records, "must be >= 1")

        total = len(self._records)
        result = CompactResult(chain_key=self.key, records_before=total, records_after=total)
        if total == 0:
            return result

        tail = total - 1
        mandatory = {0, tail}
        if self._cursor >= 0:
            mandatory.add(self._cursor)

        optional = sorted(
            i for i in range(total)
            if i not in mandatory and (tail - i) % keep_every_nth == 0
        )
        while optional and len(mandatory) + len(optional) > max_records:
            optional.pop(0)

        kept = sorted(mandatory.union(optional))
        if len(kept) == total:
            result.index_map = {i: i for i in range(total)}
            return result

        records: List[CheckpointRecord] = []
        rewritten: List[int] = []
        replaced: List[CheckpointRecord] = []
        contents: Dict[str, str] = {}
        previous = None
        for old_index in kept:
            record = self._records[old_index]
            if not record.is_full and previous != old_index - 1:
                content = self.reconstruct(old_index)
                replaced.append(record)
                record = self._as_full(record, content)
                contents[record.record_id] = content
                rewritten.append(old_index)
            records.append(record)
            previous = old_index

        removed_indices = [i for i in range(total) if i not in set(kept)]
        dropped = [self._records[i] for i in removed_indices]
        self._renumber(records)

        index_map = {old: new for new, old in enumerate(kept)}
        self._records = records
        self._cursor = index_map.get(self._cursor, len(records) - 1)
        self._forget(dropped + replaced)
        for record_id, content in contents.items():
            self._dirty.add(record_id)
            self._cache_put(record_id, content)

        result.records_after = len(records)
        result.removed = removed_indices
        result.rewritten = rewritten
        result.index_map = index_map

        logger.info(
            "chain_compacted",
            chain_key=self.key,
            before=total,
            after=len(records),
            rewritten=len(rewritten)
        )
        return result

    # Change tracking

    @property
    def has_changes(self) -> bool:
        return bool(self._dirty or self._removed)

    def drain_changes(self) -> Tuple[List[CheckpointRecord], List[str]]:
        """Return and reset (records to save, record ids to delete)"""
        live = {r.record_id: r for r in self._records}
        dirty = [live[rid] for rid in self._dirty if rid in live]
        removed = [rid for rid in self._removed if rid not in live]
        self._dirty = set()
        self._removed = set()
        return dirty, removed

    def fork(self) -> "CheckpointChain":
        """Independent copy to stage a mutation on; records are shared, never mutated in place"""
        staged = copy.copy(self)
        staged._records = list(self._records)
        staged._dirty = set(self._dirty)
        staged._removed = set(self._removed)
        staged._cache = OrderedDict(self._cache)
        return staged

    # Internals

    def _check_index(self, index: int, records: Optional[List[CheckpointRecord]] = None) -> None:
        records = self._records if records is None else records
        if not isinstance(index, int) or not 0 <= index < len(records):
            raise NotFoundError(
                f"Checkpoint index {index} not found for {self.key} ({len(records)} checkpoints)",
                chain_key=self.key
            )

    def _decode(self, record: CheckpointRecord) -> RecordBody:
        raw = self.compression.unpack(record.payload, record.compressed)
        if record.kind is RecordKind.FULL:
            try:
                return Snapshot(raw.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise CorruptRecordError(f"Full record is not valid UTF-8: {e}", cause=e) from e
        return Patch(Diff.from_bytes(raw))

    def _body_content(self, body: RecordBody, previous: Optional[str]) -> str:
        if isinstance(body, Snapshot):
            return body.content
        if isinstance(body, Patch):
            if previous is None:
                raise CorruptRecordError("Diff record has no base content", chain_key=self.key)
            return self.diff_codec.apply(previous, body.diff)
        raise TypeError(f"Unknown record body: {body!r}")

    def _as_full(self, record: CheckpointRecord, content: str) -> CheckpointRecord:
        raw = content.encode("utf-8")
        payload, compressed = self.compression.pack(raw)
        return replace(
            record,
            record_id=uuid.uuid4().hex,
            kind=RecordKind.FULL,
            payload=payload,
            compressed=compressed,
            raw_size=len(raw),
            tags=set(record.tags),
        )

    def _forget(self, records: Iterable[CheckpointRecord]) -> None:
        for record in records:
            self._removed.add(record.record_id)
            self._dirty.discard(record.record_id)
            self._cache.pop(record.record_id, None)

    @staticmethod
    def _renumber(records: List[CheckpointRecord]) -> None:
        for i, record in enumerate(records):
            if record.sequence_index != i:
                records[i] = replace(record, sequence_index=i)

    def _cache_get(self, record_id: str) -> Optional[str]:
        content = self._cache.get(record_id)
        if content is not None:
            self._cache.move_to_end(record_id)
        return content

    def _cache_put(self, record_id: str, content: str) -> None:
        self._cache[record_id] = content
        self._cache.move_to_end(record_id)
        while len(self._cache) > _CACHE_SIZE:
            self._cache.popitem(last=False)
