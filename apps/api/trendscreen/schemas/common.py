from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field

# Per-unit error messages kept on a JobResult; the rest are only counted
MAX_RECORDED_ERRORS = 20


class JobResult(BaseModel):
    """Summary returned by every batch job."""

    job: str
    dates: List[date] = Field(default_factory=list)
    processed: int = 0
    written: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    duration_seconds: Optional[float] = None

    def record_failure(self, unit: str, error: BaseException) -> None:
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(f"{unit}: {error}")

    def merge(self, other: "JobResult") -> None:
        self.dates.extend(d for d in other.dates if d not in self.dates)
        self.processed += other.processed
        self.written += other.written
        self.skipped += other.skipped
        self.failed += other.failed
        room = MAX_RECORDED_ERRORS - len(self.errors)
        if room > 0:
            self.errors.extend(other.errors[:room])

    @property
    def ok(self) -> bool:
        return self.failed == 0
