"""
Per-request exam instances and their state machine.

``pending -> in_process -> completed``; the only way back from ``completed``
is ``reopen``. Every mutation runs under the instance's lock so the state
check and the write see the same snapshot.
"""
import logging
from typing import Any

from sqlalchemy.orm import Session

from labcore.database import utcnow
from labcore.errors import IncompleteDataError, InvalidStateError, InvalidTransitionError, NotFoundError
from labcore.models.exam import ExamDefinitionRecord, ExamType
from labcore.models.request import ExamInstanceRecord, InstanceState, LabRequestRecord, ResultCaptureRecord
from labcore.services.catalog import get_definition
from labcore.services.locks import instance_key, locks
from labcore.services.ranges import deserialize_value

logger = logging.getLogger(__name__)

OWNS_FIELDS = {ExamType.SIMPLE.value, ExamType.HYBRID.value}
OWNS_CHILDREN = {ExamType.COMPOSITE.value, ExamType.HYBRID.value}


def get_instance(db: Session, instance_id: int) -> ExamInstanceRecord:
    instance = db.get(ExamInstanceRecord, instance_id)
    if instance is None:
        raise NotFoundError("Exam instance", instance_id)
    return instance


def locked_instance(db: Session, instance_id: int) -> ExamInstanceRecord:
    instance = (
        db.query(ExamInstanceRecord)
        .filter(ExamInstanceRecord.id == instance_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if instance is None:
        raise NotFoundError("Exam instance", instance_id)
    return instance


def _build_instance(definition: ExamDefinitionRecord, request_id: int, position: int) -> ExamInstanceRecord:
    instance = ExamInstanceRecord(
        request_id=request_id,
        exam_definition_id=definition.id,
        position=position,
        state=InstanceState.PENDING.value,
    )
    if definition.exam_type in OWNS_CHILDREN:
        for index, link in enumerate(definition.child_links):
            instance.children.append(_build_instance(link.child, request_id, index))
    return instance


def add_instance(db: Session, request: LabRequestRecord, definition_id: int, position: int) -> ExamInstanceRecord:
    """Attach a pending instance (and its child instances) to ``request`` without committing."""
    definition = get_definition(db, definition_id)
    if not definition.active:
        raise InvalidStateError(f"Exam {definition.code} is inactive and cannot be requested")
    instance = _build_instance(definition, request.id, position)
    db.add(instance)
    return instance


def instantiate(db: Session, request_id: int, definition_id: int) -> ExamInstanceRecord:
    request = db.get(LabRequestRecord, request_id)
    if request is None:
        raise NotFoundError("Lab request", request_id)
    position = len(request.top_level_instances)
    instance = add_instance(db, request, definition_id, position)
    db.commit()
    db.refresh(instance)
    logger.info("Instantiated exam %s on request %s as instance %s", definition_id, request_id, instance.id)
    return instance


def missing_requirements(instance: ExamInstanceRecord) -> tuple[list[str], list[int]]:
    """Required field names without a value, and child instances not yet completed."""
    definition = instance.definition
    missing_fields: list[str] = []
    incomplete_children: list[int] = []
    if definition.exam_type in OWNS_FIELDS:
        captured = {capture.field_id for capture in instance.captures if capture.value and capture.value.strip()}
        missing_fields = [f.name for f in definition.active_fields if f.required and f.id not in captured]
    if definition.exam_type in OWNS_CHILDREN:
        incomplete_children = [
            child.id for child in instance.children if child.state != InstanceState.COMPLETED.value
        ]
    return missing_fields, incomplete_children


def mark_in_process(instance: ExamInstanceRecord) -> bool:
    """Move a pending instance to ``in_process``; report whether it changed."""
    if instance.state == InstanceState.COMPLETED.value:
        raise InvalidTransitionError(instance.id, instance.state, InstanceState.IN_PROCESS.value)
    if instance.state == InstanceState.IN_PROCESS.value:
        return False
    instance.state = InstanceState.IN_PROCESS.value
    return True


def promote_ancestors(db: Session, instance: ExamInstanceRecord) -> None:
    # one lock at a time, walking child -> parent
    parent_id = instance.parent_instance_id
    while parent_id is not None:
        with locks.hold(instance_key(parent_id)):
            parent = locked_instance(db, parent_id)
            if parent.state == InstanceState.PENDING.value:
                parent.state = InstanceState.IN_PROCESS.value
                db.commit()
                logger.info("Instance %s moved to in_process by child %s", parent.id, instance.id)
            parent_id = parent.parent_instance_id


def begin_processing(db: Session, instance_id: int) -> ExamInstanceRecord:
    with locks.hold(instance_key(instance_id)):
        instance = locked_instance(db, instance_id)
        changed = mark_in_process(instance)
        if changed:
            db.commit()
            logger.info("Instance %s moved to in_process", instance_id)
    if changed:
        promote_ancestors(db, instance)
    db.refresh(instance)
    return instance


def complete(db: Session, instance_id: int) -> ExamInstanceRecord:
    with locks.hold(instance_key(instance_id)):
        instance = locked_instance(db, instance_id)
        if instance.state == InstanceState.COMPLETED.value:
            raise InvalidTransitionError(instance_id, instance.state, InstanceState.COMPLETED.value)

        # children are read, not locked; a stale read only delays completion
        for child in instance.children:
            db.refresh(child, attribute_names=["state"])
        missing_fields, incomplete_children = missing_requirements(instance)
        if missing_fields or incomplete_children:
            raise IncompleteDataError(instance_id, missing_fields, incomplete_children)

        previous = instance.state
        instance.state = InstanceState.COMPLETED.value
        instance.completed_at = utcnow()
        db.commit()
        db.refresh(instance)
    logger.info("Instance %s completed (was %s)", instance_id, previous)
    return instance


def reopen(db: Session, instance_id: int, reason: str | None = None) -> ExamInstanceRecord:
    """Explicitly take a completed instance back to ``in_process`` for correction."""
    with locks.hold(instance_key(instance_id)):
        instance = locked_instance(db, instance_id)
        if instance.state != InstanceState.COMPLETED.value:
            raise InvalidTransitionError(instance_id, instance.state, InstanceState.IN_PROCESS.value)
        if instance.parent is not None:
            db.refresh(instance.parent, attribute_names=["state"])
            if instance.parent.state == InstanceState.COMPLETED.value:
                raise InvalidStateError(
                    f"Parent instance {instance.parent.id} is completed; reopen it first",
                    instance_id=instance_id,
                    state=instance.state,
                )
        instance.state = InstanceState.IN_PROCESS.value
        instance.completed_at = None
        db.commit()
        db.refresh(instance)
    logger.info("Instance %s reopened: %s", instance_id, reason or "no reason given")
    return instance


def capture_to_dict(capture: ResultCaptureRecord) -> dict[str, Any]:
    field = capture.field
    return {
        "id": capture.id,
        "exam_instance_id": capture.exam_instance_id,
        "field_id": capture.field_id,
        "field_name": field.name,
        "section": field.section,
        "order": field.order,
        "value": deserialize_value(field.data_type, capture.value),
        "unit": capture.unit,
        "reference_expression": capture.reference_expression,
        "out_of_range": capture.out_of_range,
        "observations": capture.observations,
        "captured_at": capture.captured_at,
    }


def instance_to_dict(instance: ExamInstanceRecord) -> dict[str, Any]:
    definition = instance.definition
    missing_fields, incomplete_children = missing_requirements(instance)
    return {
        "id": instance.id,
        "request_id": instance.request_id,
        "exam_definition_id": instance.exam_definition_id,
        "exam_code": definition.code,
        "exam_name": definition.name,
        "exam_type": definition.exam_type,
        "parent_instance_id": instance.parent_instance_id,
        "state": instance.state,
        "completed_at": instance.completed_at,
        "child_instance_ids": instance.child_instance_ids,
        "captures": [capture_to_dict(capture) for capture in instance.captures],
        "missing_fields": missing_fields,
        "incomplete_children": incomplete_children,
    }
