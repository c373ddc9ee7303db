"""In-memory session aggregate"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any

from .chain import CheckpointChain
from .models import SessionSummary, SessionIndex


@dataclass
class Session:
    """A named set of chains sharing a lifecycle

    ``broken_chains`` maps chain keys that failed to load to the reason;
    they are kept out of ``chains`` so the rest of the session stays usable.
    """
    id: str
    created_at: datetime
    updated_at: datetime
    auto_checkpoint_interval: int
    vcs_branch: Optional[str] = None
    chains: Dict[str, CheckpointChain] = field(default_factory=dict)
    broken_chains: Dict[str, str] = field(default_factory=dict)

    @property
    def storage_bytes_used(self) -> int:
        return sum(chain.storage_bytes for chain in self.chains.values())

    @property
    def record_count(self) -> int:
        return sum(len(chain) for chain in self.chains.values())

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            auto_checkpoint_interval=self.auto_checkpoint_interval,
            vcs_branch=self.vcs_branch,
            storage_bytes=self.storage_bytes_used,
            record_count=self.record_count,
            chain_count=sum(1 for chain in self.chains.values() if len(chain)),
        )

    def index(self) -> SessionIndex:
        return SessionIndex(
            chains={
                key: [r.record_id for r in chain.records]
                for key, chain in self.chains.items()
            },
            cursors={key: chain.cursor for key, chain in self.chains.items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.summary().to_dict()
        data["broken_chains"] = dict(self.broken_chains)
        return data
