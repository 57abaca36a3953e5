from __future__ import annotations

from pydantic import BaseModel, Field

from .models import PipelineRun, Trigger


class TriggerRequest(BaseModel):
    trigger: Trigger = Field(Trigger.PUSH, description="push|manual")
    revision: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=r"^[A-Za-z0-9][A-Za-z0-9_.\-/]*$",
        description="Source revision, e.g. a commit id or branch",
    )


class RollbackRequest(BaseModel):
    tag: str = Field(
        ...,
        min_length=1,
        max_length=128,
        pattern=r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$",
        description="Published content-addressed tag, e.g. sha-1a2b3c",
    )
    services: list[str] | None = Field(None, description="Built services to pin (default: all)")


class StageOut(BaseModel):
    stage_name: str
    started_at: str
    finished_at: str
    outcome: str
    detail: str


class RunOut(BaseModel):
    id: str
    trigger: str
    revision: str
    status: str
    state: str
    failed_stage: str | None = None
    error_kind: str | None = None
    detail: str = ""
    recreated: list[str] = Field(default_factory=list)
    created_at: str
    finished_at: str | None = None
    stages: list[StageOut] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: PipelineRun) -> "RunOut":
        return cls(
            id=run.id,
            trigger=run.trigger.value,
            revision=run.revision,
            status=run.status.value,
            state=run.state.value,
            failed_stage=run.failed_stage,
            error_kind=run.error_kind,
            detail=run.detail,
            recreated=list(run.recreated),
            created_at=run.created_at,
            finished_at=run.finished_at,
            stages=[
                StageOut(
                    stage_name=s.stage_name,
                    started_at=s.started_at,
                    finished_at=s.finished_at,
                    outcome=s.outcome.value,
                    detail=s.detail,
                )
                for s in list(run.stages)
            ],
        )


class RouteOut(BaseModel):
    prefix: str
    service: str
    port: int
    strip_prefix: bool
