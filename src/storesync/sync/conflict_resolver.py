"""Per-record conflict decisions between local and remote snapshots."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..utils.datetime import min_utc, truncate_to_second
from .models import ConflictStrategy, RecordSnapshot, ResolutionAction


logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Decision reached for one conflicting record."""

    action: ResolutionAction
    fields: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    @classmethod
    def use_local(cls, reason: str = "") -> "Resolution":
        return cls(ResolutionAction.USE_LOCAL, reason=reason)

    @classmethod
    def use_remote(cls, reason: str = "") -> "Resolution":
        return cls(ResolutionAction.USE_REMOTE, reason=reason)

    @classmethod
    def merge(cls, fields: Dict[str, Any], reason: str = "") -> "Resolution":
        return cls(ResolutionAction.MERGE, fields=dict(fields), reason=reason)

    @classmethod
    def requires_manual(cls, reason: str = "") -> "Resolution":
        return cls(ResolutionAction.REQUIRES_MANUAL, reason=reason)


class ConflictResolver:
    """Resolves synchronization conflicts using various strategies.

    ``resolve`` is a pure function of its inputs. It never produces a merge on
    its own; merges only come from an explicit manual resolution.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def resolve(self, local: RecordSnapshot, remote: RecordSnapshot,
                strategy: ConflictStrategy) -> Resolution:
        """Decide which side wins for a record changed on both sides.

        Args:
            local: Local snapshot
            remote: Remote snapshot
            strategy: The mapping's conflict strategy

        Returns:
            Resolution with the chosen action
        """
        if strategy == ConflictStrategy.LOCAL_WINS:
            return Resolution.use_local("Local version wins by strategy")
        elif strategy == ConflictStrategy.REMOTE_WINS:
            return Resolution.use_remote("Remote version wins by strategy")
        elif strategy == ConflictStrategy.MOST_RECENT_WINS:
            return self._resolve_most_recent_wins(local, remote)
        elif strategy == ConflictStrategy.MANUAL:
            return Resolution.requires_manual("Manual resolution required")
        raise ValueError(f"Unknown strategy: {strategy}")

    def _resolve_most_recent_wins(self, local: RecordSnapshot, remote: RecordSnapshot) -> Resolution:
        """Keep the newer side; equal seconds go to the remote system of record."""
        local_time = truncate_to_second(local.updated_at or min_utc())
        remote_time = truncate_to_second(remote.updated_at or min_utc())

        if local_time > remote_time:
            return Resolution.use_local("Local version is newer")
        return Resolution.use_remote("Remote version is newer or equally recent")

    def changed_fields(self, local: RecordSnapshot, remote: RecordSnapshot) -> List[str]:
        """Names of fields whose values differ, local field order first."""
        names = list(local.fields)
        names.extend(name for name in remote.fields if name not in local.fields)
        return [name for name in names if local.fields.get(name) != remote.fields.get(name)]

    def apply_merge(self, local: RecordSnapshot, remote: RecordSnapshot,
                    fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Build the merged field set: remote values overlaid by local ones,
        then by the explicitly chosen ``fields``."""
        merged = dict(remote.fields)
        merged.update(local.fields)
        merged.update(fields or {})
        return merged
