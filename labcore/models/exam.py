from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from labcore.database import Base, utcnow


class ExamType(str, Enum):
    SIMPLE = "simple"
    COMPOSITE = "composite"
    HYBRID = "hybrid"


class DataType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    SELECT = "select"
    BOOLEAN = "boolean"
    LONGTEXT = "longtext"


class ExamDefinitionRecord(Base):
    __tablename__ = "exam_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    category_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    exam_type: Mapped[str] = mapped_column("type", String(20), nullable=False, default=ExamType.SIMPLE.value)
    is_profile: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    active: Mapped[bool] = mapped_column(Boolean, index=True, nullable=False, default=True)
    sample_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_method: Mapped[str | None] = mapped_column(String(255), nullable=True)
    section_titles: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    fields = relationship(
        "FieldSchemaRecord",
        back_populates="exam",
        cascade="all, delete-orphan",
        order_by=lambda: [FieldSchemaRecord.order, FieldSchemaRecord.id],
    )
    child_links = relationship(
        "ExamChildLink",
        foreign_keys="ExamChildLink.parent_id",
        back_populates="parent",
        cascade="all, delete-orphan",
        order_by="ExamChildLink.position",
    )

    @property
    def active_fields(self) -> list["FieldSchemaRecord"]:
        return [f for f in self.fields if f.active]

    @property
    def child_exam_ids(self) -> list[int]:
        return [link.child_id for link in self.child_links]


class FieldSchemaRecord(Base):
    __tablename__ = "exam_fields"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exam_id: Mapped[int] = mapped_column(ForeignKey("exam_definitions.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    data_type: Mapped[str] = mapped_column(String(20), nullable=False, default=DataType.TEXT.value)
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_expression: Mapped[str | None] = mapped_column(String(255), nullable=True)
    options: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    order: Mapped[int] = mapped_column("sort_order", Integer, nullable=False, default=0)
    section: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, index=True, nullable=False, default=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    change_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    exam = relationship("ExamDefinitionRecord", back_populates="fields")
    captures = relationship("ResultCaptureRecord", back_populates="field")


class ExamChildLink(Base):
    __tablename__ = "exam_children"
    __table_args__ = (UniqueConstraint("parent_id", "child_id", name="uq_exam_children_parent_child"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    parent_id: Mapped[int] = mapped_column(ForeignKey("exam_definitions.id", ondelete="CASCADE"), index=True)
    child_id: Mapped[int] = mapped_column(ForeignKey("exam_definitions.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    parent = relationship("ExamDefinitionRecord", foreign_keys=[parent_id], back_populates="child_links")
    child = relationship("ExamDefinitionRecord", foreign_keys=[child_id])
