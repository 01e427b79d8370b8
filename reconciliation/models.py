"""
Data models for the Reconciliation Service.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class SyncResult:
    """Projection rows changed by one sync pass."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    entries_checked: int = 0

    @property
    def changes(self) -> int:
        return self.added + self.updated + self.removed

    @property
    def in_sync(self) -> bool:
        return self.changes == 0

    @property
    def message(self) -> str:
        if self.in_sync:
            return "All entries already in sync"
        return f"Sync completed: Added {self.added}, Updated {self.updated}, Removed {self.removed} entries"


@dataclass
class CleanupResult:
    """Outcome of duplicate reservation cleanup."""

    duplicates_removed: int = 0
    consolidated: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ReconciliationReport:
    """Everything one reconciliation run did and found."""

    sync: SyncResult
    cleanup: CleanupResult
    orphans_removed: int = 0
    truck_changes: int = 0
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[int] = None
    duration_ms: float = 0.0

    @property
    def is_clean(self) -> bool:
        return self.sync.in_sync and not self.cleanup.duplicates_removed and not self.warnings

    def __str__(self) -> str:
        status = "✅" if self.is_clean else "⚠️"
        return (
            f"ReconciliationReport({status} {self.sync.message}; "
            f"duplicates removed {self.cleanup.duplicates_removed}, orphans removed {self.orphans_removed}, "
            f"truck changes {self.truck_changes}, warnings {len(self.warnings)}, {self.duration_ms:.0f}ms)"
        )
