from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from labcore.models.exam import DataType, ExamType


class FieldSchemaIn(BaseModel):
    """One reportable attribute as supplied by the catalog authoring form."""
    id: int | None = Field(default=None, description="Existing field id when editing; omitted for new fields")
    name: str = Field(min_length=1, max_length=255, description="Label shown to the technician")
    data_type: DataType = Field(default=DataType.TEXT, description="Value type captured for this field")
    unit: str | None = Field(default=None, max_length=50, description="Unit of measurement")
    reference_expression: str | None = Field(
        default=None, max_length=255, description="Reference range, comparison or expected value"
    )
    section: str | None = Field(default=None, max_length=255, description="Raw section key used for grouping")
    required: bool = False
    options: list[str] = Field(default_factory=list, description="Allowed values for select fields")
    description: str | None = None
    # accepted for compatibility with older clients; position in the list wins
    order: int | None = Field(default=None, ge=0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Field name must not be blank")
        return value

    @field_validator("section", "unit", "reference_expression")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("options")
    @classmethod
    def _clean_options(cls, value: list[str]) -> list[str]:
        return [option.strip() for option in value if option and option.strip()]

    @model_validator(mode="after")
    def _select_needs_options(self):
        if self.data_type == DataType.SELECT and not self.options:
            raise ValueError(f"Select field '{self.name}' needs at least one option")
        return self


class ExamDefinitionIn(BaseModel):
    """Full authoring payload; fields and children replace the stored lists wholesale."""
    code: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=255)
    category_id: int | None = None
    type: ExamType = ExamType.SIMPLE
    is_profile: bool = False
    active: bool = True
    sample_instructions: str | None = None
    analysis_method: str | None = Field(default=None, max_length=255)
    fields: list[FieldSchemaIn] = Field(default_factory=list)
    child_exam_ids: list[int] = Field(default_factory=list)
    section_titles: dict[str, str] = Field(default_factory=dict)
    change_reason: str | None = Field(default=None, max_length=255)

    @field_validator("code", "name")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Value must not be blank")
        return value


class FieldSchemaOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    data_type: str
    unit: str | None
    reference_expression: str | None
    section: str | None
    order: int
    required: bool
    options: list[str]
    description: str | None
    active: bool
    version: int


class ExamDefinitionOut(BaseModel):
    id: int
    code: str
    name: str
    category_id: int | None
    type: str
    is_profile: bool
    active: bool
    sample_instructions: str | None
    analysis_method: str | None
    fields: list[FieldSchemaOut]
    child_exam_ids: list[int]
    section_titles: dict[str, str]
    created_at: datetime
    updated_at: datetime


class ExamSearchItem(BaseModel):
    id: int
    code: str
    name: str
    type: str
    is_profile: bool
    active: bool
    score: float | None = None
