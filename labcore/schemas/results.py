from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class CaptureIn(BaseModel):
    field_id: int
    value: Any = Field(description="Raw value as entered; validated against the field's data type")
    observations: str | None = None


class BulkCaptureIn(BaseModel):
    results: list[CaptureIn] = Field(min_length=1)


class ReopenIn(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class CaptureOut(BaseModel):
    id: int
    exam_instance_id: int
    field_id: int
    field_name: str
    value: str | float | bool
    unit: str | None
    reference_expression: str | None
    out_of_range: bool
    observations: str | None
    captured_at: datetime


class InstanceOut(BaseModel):
    id: int
    request_id: int
    exam_definition_id: int
    exam_code: str
    exam_name: str
    exam_type: str
    parent_instance_id: int | None
    state: str
    completed_at: datetime | None
    child_instance_ids: list[int]
    captures: list[CaptureOut]
    missing_fields: list[str]
    incomplete_children: list[int]


class RequestCreateIn(BaseModel):
    reference: str | None = Field(default=None, max_length=100)
    exam_ids: list[int] = Field(min_length=1)

    @field_validator("exam_ids")
    @classmethod
    def _no_duplicates(cls, value: list[int]) -> list[int]:
        if len(set(value)) != len(value):
            raise ValueError("Each exam can be requested only once")
        return value


class RequestAggregateOut(BaseModel):
    pending: int
    in_process: int
    completed: int
    total: int
    overall: str
