"""
Pydantic result types returned by the rollover engine and batch driver.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class ErrorKind(StrEnum):
    TRANSIENT_STORE = "transient_store"
    VERSION_CONFLICT = "version_conflict"
    DATA_SHAPE = "data_shape"
    UNEXPECTED = "unexpected"


class RolloverState(StrEnum):
    NO_CURRENT_WEEK = "no_current_week"
    ALREADY_CURRENT = "already_current"
    ROLLED = "rolled"
    FAILED = "failed"


class RolloverResult(BaseModel):
    user_id: str
    success: bool
    rolled: bool
    message: str
    state: RolloverState
    from_week: Optional[str] = None
    to_week: Optional[str] = None
    goals_count: Optional[int] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def failure(cls, user_id: str, message: str, error_kind: ErrorKind) -> "RolloverResult":
        return cls(
            user_id=user_id,
            success=False,
            rolled=False,
            message=message,
            state=RolloverState.FAILED,
            error_kind=error_kind,
        )


class BatchSummary(BaseModel):
    total: int = 0
    rolled: int = 0
    skipped: int = 0
    failed: int = 0
    details: list[RolloverResult] = Field(default_factory=list)

    def record(self, result: RolloverResult) -> None:
        self.total += 1
        if not result.success:
            self.failed += 1
        elif result.rolled:
            self.rolled += 1
        else:
            self.skipped += 1
        self.details.append(result)


class SyncResult(BaseModel):
    user_id: str
    success: bool
    week_id: Optional[str] = None
    goals: list[dict] = Field(default_factory=list)
    created: int = 0
    message: str = ""
    error_kind: Optional[ErrorKind] = None
