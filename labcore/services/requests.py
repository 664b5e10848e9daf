import logging

from sqlalchemy.orm import Session

from labcore.errors import NotFoundError
from labcore.models.request import LabRequestRecord
from labcore.services.aggregate import RequestAggregate, aggregate
from labcore.services.instances import add_instance

logger = logging.getLogger(__name__)


def get_request(db: Session, request_id: int) -> LabRequestRecord:
    request = db.get(LabRequestRecord, request_id)
    if request is None:
        raise NotFoundError("Lab request", request_id)
    return request


def create_request(db: Session, exam_ids: list[int], reference: str | None = None) -> LabRequestRecord:
    """Create a request and instantiate every exam on it in one transaction."""
    request = LabRequestRecord(reference=reference)
    db.add(request)
    db.flush()
    try:
        for position, exam_id in enumerate(exam_ids):
            add_instance(db, request, exam_id, position)
    except Exception:
        db.rollback()
        raise
    db.commit()
    db.refresh(request)
    logger.info("Created request %s with %s exams", request.id, len(exam_ids))
    return request


def get_request_status(db: Session, request_id: int) -> RequestAggregate:
    return aggregate(get_request(db, request_id).instances)
