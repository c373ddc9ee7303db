"""Checkpoint codecs, records and chains"""

from .diff import DiffCodec, Diff, DiffOp, OpCode
from .compression import CompressionCodec
from .models import (
    CheckpointRecord,
    RecordKind,
    VcsRef,
    Snapshot,
    Patch,
    SessionSummary,
    SessionIndex,
    content_hash,
)
from .chain import CheckpointChain, CompactResult
from .session import Session

__all__ = [
    'DiffCodec',
    'Diff',
    'DiffOp',
    'OpCode',
    'CompressionCodec',
    'CheckpointRecord',
    'RecordKind',
    'VcsRef',
    'Snapshot',
    'Patch',
    'SessionSummary',
    'SessionIndex',
    'content_hash',
    'CheckpointChain',
    'CompactResult',
    'Session',
]
