from datetime import datetime, timezone
from typing import Literal, Union

from pydantic import BaseModel, Field


class StatusEvent(BaseModel):
    type: Literal["status"] = "status"
    message: str
    stage: str | None = None
    total: int | None = None


class PackageStartEvent(BaseModel):
    type: Literal["package_start"] = "package_start"
    id: int
    external_id: int
    message: str


class PackageInfoEvent(BaseModel):
    type: Literal["package_info"] = "package_info"
    id: int
    title: str


class PackageStatusEvent(BaseModel):
    type: Literal["package_status"] = "package_status"
    message: str


class PackageVarianceEvent(BaseModel):
    type: Literal["package_variance"] = "package_variance"
    id: int
    variance: str


class PackageDoneEvent(BaseModel):
    type: Literal["package_done"] = "package_done"
    id: int
    status: Literal["needs_manual", "updated", "no_change"]
    title: str | None = None
    variance: str | None = None
    message: str


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    success: bool
    summary: dict


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


ProgressEvent = Union[
    StatusEvent,
    PackageStartEvent,
    PackageInfoEvent,
    PackageStatusEvent,
    PackageVarianceEvent,
    PackageDoneEvent,
    CompleteEvent,
    ErrorEvent,
]

TERMINAL_EVENT_TYPES = ("complete", "error")


class RequoteOutcome(BaseModel):
    id: int
    external_id: int | None = None
    title: str | None = None
    status: str
    variance: str | None = None


class RequoteRun(BaseModel):
    """Live state of one supervised requote run, updated as events are published."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    current_package_id: int | None = None
    current_external_id: int | None = None

    processed: int = 0
    success: int = 0
    errors: int = 0
    needs_manual: int = 0
    auto_updated: int = 0
    no_change: int = 0
    duration: str | None = None

    outcomes: list[RequoteOutcome] = Field(default_factory=list)

    def apply(self, event: BaseModel):
        if isinstance(event, PackageStartEvent):
            self.current_package_id = event.id
            self.current_external_id = event.external_id
        elif isinstance(event, PackageDoneEvent):
            if event.status == "needs_manual":
                self.needs_manual += 1
            elif event.status == "updated":
                self.auto_updated += 1
            else:
                self.no_change += 1
            self.outcomes.append(RequoteOutcome(
                id=event.id,
                external_id=self.current_external_id if self.current_package_id == event.id else None,
                title=event.title,
                status=event.status,
                variance=event.variance,
            ))

    def summary(self) -> dict:
        return {
            "processed": self.processed,
            "success": self.success,
            "errors": self.errors,
            "needsManual": self.needs_manual,
            "autoUpdated": self.auto_updated,
            "noChange": self.no_change,
            "duration": self.duration,
            "packages": [o.model_dump() for o in self.outcomes],
        }

    @property
    def needs_manual_ids(self) -> list[int]:
        return [o.id for o in self.outcomes if o.status == "needs_manual"]


class PendingRequotePackage(BaseModel):
    id: int
    external_id: int
    title: str


class PendingRequotesResponse(BaseModel):
    pendingCount: int
    packages: list[PendingRequotePackage]
