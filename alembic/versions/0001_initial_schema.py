"""initial schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "exam_definitions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("code", sa.String(length=20), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("is_profile", sa.Boolean(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("sample_instructions", sa.Text(), nullable=True),
        sa.Column("analysis_method", sa.String(length=255), nullable=True),
        sa.Column("section_titles", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_exam_definitions_code", "exam_definitions", ["code"], unique=True)
    op.create_index("ix_exam_definitions_name", "exam_definitions", ["name"], unique=False)
    op.create_index("ix_exam_definitions_category_id", "exam_definitions", ["category_id"], unique=False)
    op.create_index("ix_exam_definitions_active", "exam_definitions", ["active"], unique=False)

    op.create_table(
        "exam_fields",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("exam_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("data_type", sa.String(length=20), nullable=False),
        sa.Column("unit", sa.String(length=50), nullable=True),
        sa.Column("reference_expression", sa.String(length=255), nullable=True),
        sa.Column("options", sa.Text(), nullable=False),
        sa.Column("required", sa.Boolean(), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("section", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(), nullable=True),
        sa.Column("change_reason", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["exam_id"], ["exam_definitions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_exam_fields_exam_id", "exam_fields", ["exam_id"], unique=False)
    op.create_index("ix_exam_fields_active", "exam_fields", ["active"], unique=False)

    op.create_table(
        "exam_children",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=False),
        sa.Column("child_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["parent_id"], ["exam_definitions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["child_id"], ["exam_definitions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("parent_id", "child_id", name="uq_exam_children_parent_child"),
    )
    op.create_index("ix_exam_children_parent_id", "exam_children", ["parent_id"], unique=False)
    op.create_index("ix_exam_children_child_id", "exam_children", ["child_id"], unique=False)

    op.create_table(
        "lab_requests",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("reference", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_lab_requests_reference", "lab_requests", ["reference"], unique=False)

    op.create_table(
        "exam_instances",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=False),
        sa.Column("exam_definition_id", sa.Integer(), nullable=False),
        sa.Column("parent_instance_id", sa.Integer(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["request_id"], ["lab_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["exam_definition_id"], ["exam_definitions.id"]),
        sa.ForeignKeyConstraint(["parent_instance_id"], ["exam_instances.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_exam_instances_request_id", "exam_instances", ["request_id"], unique=False)
    op.create_index("ix_exam_instances_exam_definition_id", "exam_instances", ["exam_definition_id"], unique=False)
    op.create_index("ix_exam_instances_parent_instance_id", "exam_instances", ["parent_instance_id"], unique=False)
    op.create_index("ix_exam_instances_state", "exam_instances", ["state"], unique=False)

    op.create_table(
        "result_captures",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("exam_instance_id", sa.Integer(), nullable=False),
        sa.Column("field_id", sa.Integer(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("unit", sa.String(length=50), nullable=True),
        sa.Column("reference_expression", sa.String(length=255), nullable=True),
        sa.Column("out_of_range", sa.Boolean(), nullable=False),
        sa.Column("observations", sa.Text(), nullable=True),
        sa.Column("captured_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["exam_instance_id"], ["exam_instances.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["field_id"], ["exam_fields.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("exam_instance_id", "field_id", name="uq_result_captures_instance_field"),
    )
    op.create_index("ix_result_captures_exam_instance_id", "result_captures", ["exam_instance_id"], unique=False)
    op.create_index("ix_result_captures_field_id", "result_captures", ["field_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_result_captures_field_id", table_name="result_captures")
    op.drop_index("ix_result_captures_exam_instance_id", table_name="result_captures")
    op.drop_table("result_captures")

    op.drop_index("ix_exam_instances_state", table_name="exam_instances")
    op.drop_index("ix_exam_instances_parent_instance_id", table_name="exam_instances")
    op.drop_index("ix_exam_instances_exam_definition_id", table_name="exam_instances")
    op.drop_index("ix_exam_instances_request_id", table_name="exam_instances")
    op.drop_table("exam_instances")

    op.drop_index("ix_lab_requests_reference", table_name="lab_requests")
    op.drop_table("lab_requests")

    op.drop_index("ix_exam_children_child_id", table_name="exam_children")
    op.drop_index("ix_exam_children_parent_id", table_name="exam_children")
    op.drop_table("exam_children")

    op.drop_index("ix_exam_fields_active", table_name="exam_fields")
    op.drop_index("ix_exam_fields_exam_id", table_name="exam_fields")
    op.drop_table("exam_fields")

    op.drop_index("ix_exam_definitions_active", table_name="exam_definitions")
    op.drop_index("ix_exam_definitions_category_id", table_name="exam_definitions")
    op.drop_index("ix_exam_definitions_name", table_name="exam_definitions")
    op.drop_index("ix_exam_definitions_code", table_name="exam_definitions")
    op.drop_table("exam_definitions")
