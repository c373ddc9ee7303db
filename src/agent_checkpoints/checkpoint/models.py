"""Checkpoint data model"""

import base64
import binascii
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Set, Union

from .diff import Diff
from ..utils.errors import CorruptRecordError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def content_hash(content: str) -> str:
    """Short SHA-256 fingerprint of a text snapshot"""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class RecordKind(str, Enum):
    """How a record stores its content"""
    FULL = "full"
    DIFF = "diff"


@dataclass(frozen=True)
class VcsRef:
    """Opaque version-control position captured with a checkpoint"""
    branch: Optional[str] = None
    commit: Optional[str] = None

    def matches(self, other: 'VcsRef') -> bool:
        """True when every field set on ``other`` equals ours"""
        if other.branch is not None and other.branch != self.branch:
            return False
        if other.commit is not None and other.commit != self.commit:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"branch": self.branch, "commit": self.commit}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['VcsRef']:
        if not data:
            return None
        return cls(branch=data.get("branch"), commit=data.get("commit"))


@dataclass(frozen=True)
class Snapshot:
    """Decoded body of a FULL record"""
    content: str


@dataclass(frozen=True)
class Patch:
    """Decoded body of a DIFF record"""
    diff: Diff


RecordBody = Union[Snapshot, Patch]


@dataclass
class CheckpointRecord:
    """One entry of a chain's history

    ``payload`` holds the stored bytes: UTF-8 content for FULL records, an
    encoded Diff for DIFF records, zstd-compressed when ``compressed``.
    """
    record_id: str
    chain_key: str
    sequence_index: int
    created_at: datetime
    kind: RecordKind
    payload: bytes
    compressed: bool
    raw_size: int
    content_hash: str
    name: Optional[str] = None
    description: Optional[str] = None
    tags: Set[str] = field(default_factory=set)
    vcs_ref: Optional[VcsRef] = None
    edit_count: int = 0

    @property
    def size_bytes(self) -> int:
        """Stored (post-compression) payload size"""
        return len(self.payload)

    @property
    def is_full(self) -> bool:
        return self.kind is RecordKind.FULL

    def metadata_dict(self) -> Dict[str, Any]:
        """Plain metadata without the payload"""
        return {
            "record_id": self.record_id,
            "chain_key": self.chain_key,
            "sequence_index": self.sequence_index,
            "created_at": self.created_at.isoformat(),
            "kind": self.kind.value,
            "compressed": self.compressed,
            "size_bytes": self.size_bytes,
            "raw_size": self.raw_size,
            "content_hash": self.content_hash,
            "name": self.name,
            "description": self.description,
            "tags": sorted(self.tags),
            "vcs_ref": self.vcs_ref.to_dict() if self.vcs_ref else None,
            "edit_count": self.edit_count,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Metadata plus base64 payload"""
        data = self.metadata_dict()
        data["payload"] = base64.b64encode(self.payload).decode("ascii")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], payload: Optional[bytes] = None) -> 'CheckpointRecord':
        """Create from dictionary

        Args:
            data: Output of to_dict() or metadata_dict()
            payload: Payload bytes when ``data`` carries none
        """
        try:
            if payload is None:
                payload = base64.b64decode(data["payload"], validate=True)
            return cls(
                record_id=data["record_id"],
                chain_key=data["chain_key"],
                sequence_index=int(data.get("sequence_index", 0)),
                created_at=parse_timestamp(data["created_at"]),
                kind=RecordKind(data["kind"]),
                payload=payload,
                compressed=bool(data["compressed"]),
                raw_size=int(data["raw_size"]),
                content_hash=data["content_hash"],
                name=data.get("name"),
                description=data.get("description"),
                tags=set(data.get("tags") or []),
                vcs_ref=VcsRef.from_dict(data.get("vcs_ref")),
                edit_count=int(data.get("edit_count", 0)),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise CorruptRecordError(f"Malformed checkpoint record: {e}", cause=e) from e


@dataclass
class SessionSummary:
    """Persisted session header"""
    id: str
    created_at: datetime
    updated_at: datetime
    auto_checkpoint_interval: int
    vcs_branch: Optional[str] = None
    storage_bytes: int = 0
    record_count: int = 0
    chain_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "auto_checkpoint_interval": self.auto_checkpoint_interval,
            "vcs_branch": self.vcs_branch,
            "storage_bytes": self.storage_bytes,
            "record_count": self.record_count,
            "chain_count": self.chain_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionSummary':
        try:
            return cls(
                id=data["id"],
                created_at=parse_timestamp(data["created_at"]),
                updated_at=parse_timestamp(data["updated_at"]),
                auto_checkpoint_interval=int(data["auto_checkpoint_interval"]),
                vcs_branch=data.get("vcs_branch"),
                storage_bytes=int(data.get("storage_bytes", 0)),
                record_count=int(data.get("record_count", 0)),
                chain_count=int(data.get("chain_count", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptRecordError(f"Malformed session summary: {e}", cause=e) from e


@dataclass
class SessionIndex:
    """Ordered record references per chain, plus undo cursors"""
    chains: Dict[str, List[str]] = field(default_factory=dict)
    cursors: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chains": {key: list(ids) for key, ids in self.chains.items()},
            "cursors": dict(self.cursors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SessionIndex':
        try:
            return cls(
                chains={key: list(ids) for key, ids in data.get("chains", {}).items()},
                cursors={key: int(c) for key, c in data.get("cursors", {}).items()},
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise CorruptRecordError(f"Malformed session index: {e}", cause=e) from e
