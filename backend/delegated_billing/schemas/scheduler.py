"""Results reported by a scheduler pass and its stages."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class StageResult:
    """Outcome of one stage of a pass.

    ``processed`` counts items whose transition committed, ``skipped`` counts
    items left alone (a concurrent writer got there first, or the action is
    not actionable) and ``failed`` counts items whose mutation raised.
    """

    stage: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PassResult:
    run_id: str
    started_at: datetime
    duration_seconds: float = 0.0
    timed_out: bool = False
    stages: list[StageResult] = field(default_factory=list)

    def stage(self, name: str) -> StageResult | None:
        for result in self.stages:
            if result.stage == name:
                return result
        return None

    @property
    def ok(self) -> bool:
        return not self.timed_out and all(result.ok for result in self.stages)


@dataclass
class RetryRunResult:
    """Outcome of one payment-retry run over due dunning campaigns."""

    attempted: int = 0
    recovered: int = 0
    transient_failures: int = 0
    rejected: int = 0
    held: int = 0
    errors: int = 0
