from datetime import datetime
from enum import Enum

from sqlalchemy import BIGINT, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from labcore.database import Base, utcnow


class InstanceState(str, Enum):
    PENDING = "pending"
    IN_PROCESS = "in_process"
    COMPLETED = "completed"


class LabRequestRecord(Base):
    __tablename__ = "lab_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str | None] = mapped_column(String(100), index=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    instances = relationship(
        "ExamInstanceRecord",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by=lambda: [ExamInstanceRecord.position, ExamInstanceRecord.id],
    )

    @property
    def top_level_instances(self) -> list["ExamInstanceRecord"]:
        return [i for i in self.instances if i.parent_instance_id is None]


class ExamInstanceRecord(Base):
    __tablename__ = "exam_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(ForeignKey("lab_requests.id", ondelete="CASCADE"), index=True)
    exam_definition_id: Mapped[int] = mapped_column(ForeignKey("exam_definitions.id"), index=True)
    parent_instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("exam_instances.id", ondelete="CASCADE"), index=True, nullable=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(String(20), index=True, nullable=False, default=InstanceState.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    request = relationship("LabRequestRecord", back_populates="instances")
    definition = relationship("ExamDefinitionRecord")
    parent = relationship("ExamInstanceRecord", remote_side=[id], back_populates="children")
    children = relationship(
        "ExamInstanceRecord",
        back_populates="parent",
        order_by="ExamInstanceRecord.position",
    )
    captures = relationship(
        "ResultCaptureRecord",
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="ResultCaptureRecord.id",
    )

    @property
    def child_instance_ids(self) -> list[int]:
        return [child.id for child in self.children]


class ResultCaptureRecord(Base):
    __tablename__ = "result_captures"
    __table_args__ = (UniqueConstraint("exam_instance_id", "field_id", name="uq_result_captures_instance_field"),)

    id: Mapped[int] = mapped_column(BIGINT().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    exam_instance_id: Mapped[int] = mapped_column(ForeignKey("exam_instances.id", ondelete="CASCADE"), index=True)
    field_id: Mapped[int] = mapped_column(ForeignKey("exam_fields.id"), index=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_expression: Mapped[str | None] = mapped_column(String(255), nullable=True)
    out_of_range: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    instance = relationship("ExamInstanceRecord", back_populates="captures")
    field = relationship("FieldSchemaRecord", back_populates="captures")

    # read-side helpers for the section grouper
    @property
    def section(self) -> str | None:
        return self.field.section if self.field else None

    @property
    def order(self) -> int:
        return self.field.order if self.field else 0
