"""
Outcome and report models — what a run hands back to its caller.

ItemOutcome is the per-item receipt: extractors raise, the dispatch
point turns every result or exception into an outcome, and the
orchestrator aggregates outcomes into an ExecutionReport. The report is
the single source of truth for how a run went.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from confsnap.core.errors import PrerequisiteFailure
from confsnap.core.models.kinds import OperationKind, RunState


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class EngineWarning(BaseModel):
    """A non-fatal problem surfaced during a run."""

    source: str                  # resolver, prerequisite, stage, item
    message: str
    item: str = ""

    def __str__(self) -> str:
        prefix = f"[{self.source}] "
        if self.item:
            prefix += f"{self.item}: "
        return prefix + self.message


class ItemOutcome(BaseModel):
    """Result of processing one item.

    Outcomes never carry exceptions — failures are captured as a
    ``failed`` status with a reason.
    """

    item: str
    category: str
    status: Literal["succeeded", "failed", "skipped"] = "succeeded"
    reason: str = ""

    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    artifact: str = ""           # snapshot-relative path, when one was touched
    warnings: list[str] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "succeeded"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    @classmethod
    def success(cls, item: str, category: str, **kwargs: Any) -> ItemOutcome:
        """Create a success outcome."""
        return cls(item=item, category=category, status="succeeded", **kwargs)

    @classmethod
    def failure(cls, item: str, category: str, reason: str, **kwargs: Any) -> ItemOutcome:
        """Create a failure outcome."""
        return cls(item=item, category=category, status="failed", reason=reason, **kwargs)

    @classmethod
    def skip(cls, item: str, category: str, reason: str = "", **kwargs: Any) -> ItemOutcome:
        """Create a skip outcome."""
        return cls(item=item, category=category, status="skipped", reason=reason, **kwargs)


# ── Prerequisites ────────────────────────────────────────────────────


class PrerequisiteResult(BaseModel):
    """Evaluation of one prerequisite."""

    name: str
    type: str
    on_missing: str
    satisfied: bool
    output: str = ""
    message: str = ""

    @property
    def missing(self) -> bool:
        return not self.satisfied

    def blocks(self, operation: OperationKind) -> bool:
        """Whether this result, if missing, aborts ``operation``."""
        if self.satisfied:
            return False
        if self.on_missing == "fail_backup":
            return operation is OperationKind.BACKUP
        if self.on_missing == "fail_restore":
            return operation is OperationKind.RESTORE
        return False


class PrerequisiteReport(BaseModel):
    """Every prerequisite result for one run, never short-circuited."""

    operation: OperationKind
    results: list[PrerequisiteResult] = Field(default_factory=list)
    warnings: list[EngineWarning] = Field(default_factory=list)

    @property
    def missing(self) -> list[str]:
        return [r.name for r in self.results if r.missing]

    @property
    def blocking(self) -> list[str]:
        return [r.name for r in self.results if r.blocks(self.operation)]

    @property
    def passed(self) -> bool:
        return not self.blocking

    def raise_for_blocking(self) -> None:
        """Raise PrerequisiteFailure when a missing prerequisite forbids the operation."""
        blocking = self.blocking
        if blocking:
            raise PrerequisiteFailure(f"prerequisites missing: {', '.join(blocking)}", blocking)


# ── Stages ───────────────────────────────────────────────────────────


class StageItemResult(BaseModel):
    """Outcome of one stage hook."""

    name: str
    type: str
    ok: bool
    on_failure: str = "fail"
    exit_code: int | None = None
    output: str = ""
    error: str = ""
    duration_ms: int = 0


class StageReport(BaseModel):
    """All hook results for one stage, in declared order."""

    stage: str
    results: list[StageItemResult] = Field(default_factory=list)

    @property
    def failures(self) -> list[StageItemResult]:
        return [r for r in self.results if not r.ok]

    @property
    def fatal_failures(self) -> list[StageItemResult]:
        return [r for r in self.failures if r.on_failure == "fail"]

    @property
    def ok(self) -> bool:
        return not self.failures


# ── Execution report ─────────────────────────────────────────────────


@dataclass
class ExecutionReport:
    """Result of one orchestrator run."""

    operation_id: str = ""
    operation: OperationKind = OperationKind.BACKUP
    template: str = ""
    snapshot: str = ""
    state: RunState = RunState.LOADED
    transitions: list[RunState] = field(default_factory=list)
    outcomes: list[ItemOutcome] = field(default_factory=list)
    warnings: list[EngineWarning] = field(default_factory=list)
    prerequisites: PrerequisiteReport | None = None
    stages: dict[str, StageReport] = field(default_factory=dict)
    abort_reason: str = ""
    cancelled: bool = False
    started_at: str = field(default_factory=_now_iso)
    finished_at: str = ""

    def advance(self, state: RunState) -> None:
        self.state = state
        self.transitions.append(state)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped)

    @property
    def aborted(self) -> bool:
        return self.state is RunState.ABORTED

    @property
    def status(self) -> str:
        """``ok``, ``degraded`` (some items failed) or ``aborted``."""
        if self.aborted:
            return "aborted"
        if self.failed:
            return "degraded"
        return "ok"

    def outcome_for(self, item: str) -> ItemOutcome | None:
        for outcome in self.outcomes:
            if outcome.item == item:
                return outcome
        return None

    def to_dict(self) -> dict:
        return {
            "operation_id": self.operation_id,
            "operation": self.operation.value,
            "template": self.template,
            "snapshot": self.snapshot,
            "state": self.state.value,
            "status": self.status,
            "transitions": [s.value for s in self.transitions],
            "abort_reason": self.abort_reason,
            "cancelled": self.cancelled,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": [o.model_dump(mode="json") for o in self.outcomes],
            "warnings": [w.model_dump(mode="json") for w in self.warnings],
            "prerequisites": (
                self.prerequisites.model_dump(mode="json") if self.prerequisites else None
            ),
            "stages": {name: s.model_dump(mode="json") for name, s in self.stages.items()},
        }
