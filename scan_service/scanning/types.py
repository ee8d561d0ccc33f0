from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from scan_service.normalize import NOT_FOUND


@dataclass(frozen=True)
class WorkItem:
    name: str
    data: bytes = field(repr=False)
    mime_type: str
    source: str | None = None  # archive name when expanded from one

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ExtractionResult:
    item: WorkItem
    value: str  # canonical number, verbatim model line, or NOT_FOUND
    batch_label: str

    @property
    def found(self) -> bool:
        return self.value != NOT_FOUND


@dataclass(frozen=True)
class InputSummary:
    image_count: int = 0
    zip_count: int = 0
    rar_count: int = 0
    skipped: tuple[str, ...] = ()


class RunStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    ABORTED = "aborted"


@dataclass
class RunState:
    """Mutable bookkeeping for the scan currently in flight."""

    run_id: str
    total: int
    processed_count: int = 0
    results: list[ExtractionResult] = field(default_factory=list)
    failed_items: list[WorkItem] = field(default_factory=list)
    consecutive_limit_errors: int = 0
    retry_rounds: int = 0
    pending: list[WorkItem] = field(default_factory=list)  # not yet attempted in this pass


@dataclass(frozen=True)
class RunReport:
    run_id: str
    status: RunStatus
    total: int
    results: tuple[ExtractionResult, ...]
    failed_items: tuple[WorkItem, ...]
    retry_rounds: int
    error: str | None = None

    @property
    def values(self) -> list[str]:
        """Found values in completion order (not-found sentinels dropped)."""
        return [r.value for r in self.results if r.found]

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @classmethod
    def from_state(
        cls, state: RunState, *, status: RunStatus, error: str | None = None
    ) -> RunReport:
        return cls(
            run_id=state.run_id,
            status=status,
            total=state.total,
            results=tuple(state.results),
            # pending is only non-empty when a pass was cut short
            failed_items=tuple(state.failed_items) + tuple(state.pending),
            retry_rounds=state.retry_rounds,
            error=error,
        )
