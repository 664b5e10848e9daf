import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy.orm import Session

from labcore.database import utcnow
from labcore.errors import InvalidStateError, NotFoundError
from labcore.models.exam import ExamType
from labcore.models.request import ExamInstanceRecord, InstanceState, ResultCaptureRecord
from labcore.services.instances import locked_instance, mark_in_process, promote_ancestors
from labcore.services.locks import instance_key, locks
from labcore.services.ranges import coerce_value, evaluate_range, load_options, serialize_value

logger = logging.getLogger(__name__)


def _assert_capturable(instance: ExamInstanceRecord) -> None:
    if instance.state == InstanceState.COMPLETED.value:
        raise InvalidStateError(
            f"Exam instance {instance.id} is completed; its results can no longer be edited",
            instance_id=instance.id,
            state=instance.state,
        )
    if instance.definition.exam_type == ExamType.COMPOSITE.value:
        raise InvalidStateError(
            f"Exam instance {instance.id} is a composite exam; capture results on its child exams",
            instance_id=instance.id,
            state=instance.state,
        )


def _capture_one(
    instance: ExamInstanceRecord,
    field_id: int,
    raw_value: Any,
    observations: str | None,
) -> ResultCaptureRecord:
    field = next((f for f in instance.definition.active_fields if f.id == field_id), None)
    if field is None:
        raise NotFoundError("Field", field_id)

    value = coerce_value(field.data_type, raw_value, load_options(field.options), field.id)
    record = next((c for c in instance.captures if c.field_id == field_id), None)
    if record is None:
        record = ResultCaptureRecord(field_id=field.id)
        instance.captures.append(record)

    # unit and reference are copied so later catalog edits never rewrite history
    record.field = field
    record.value = serialize_value(value)
    record.unit = field.unit
    record.reference_expression = field.reference_expression
    record.out_of_range = evaluate_range(value, field.reference_expression, field.data_type)
    record.observations = observations
    record.captured_at = utcnow()
    logger.debug(
        "Captured field %s on instance %s: %r (out_of_range=%s)",
        field.id,
        instance.id,
        record.value,
        record.out_of_range,
    )
    return record


def capture(
    db: Session,
    instance_id: int,
    field_id: int,
    raw_value: Any,
    observations: str | None = None,
) -> ResultCaptureRecord:
    with locks.hold(instance_key(instance_id)):
        instance = locked_instance(db, instance_id)
        _assert_capturable(instance)
        record = _capture_one(instance, field_id, raw_value, observations)
        promoted = mark_in_process(instance)
        db.commit()
        db.refresh(record)
    if promoted:
        logger.info("Instance %s moved to in_process on first result", instance_id)
        promote_ancestors(db, instance)
    return record


def capture_many(db: Session, instance_id: int, entries: Iterable[dict[str, Any]]) -> list[ResultCaptureRecord]:
    """Save a whole result form in one transaction; any invalid value rejects all of it."""
    with locks.hold(instance_key(instance_id)):
        instance = locked_instance(db, instance_id)
        _assert_capturable(instance)
        try:
            records = [
                _capture_one(instance, entry["field_id"], entry.get("value"), entry.get("observations"))
                for entry in entries
            ]
        except Exception:
            db.rollback()
            raise
        promoted = mark_in_process(instance)
        db.commit()
        for record in records:
            db.refresh(record)
    if promoted:
        logger.info("Instance %s moved to in_process on first results", instance_id)
        promote_ancestors(db, instance)
    return records
