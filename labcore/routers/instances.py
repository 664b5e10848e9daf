from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from labcore.database import get_db
from labcore.schemas.results import BulkCaptureIn, CaptureIn, CaptureOut, InstanceOut, ReopenIn
from labcore.services import instances
from labcore.services.results import capture, capture_many

router = APIRouter(prefix="/api/instances", tags=["instances"])


def _instance_payload(db: Session, instance_id: int) -> dict:
    instance = instances.get_instance(db, instance_id)
    return InstanceOut(**instances.instance_to_dict(instance)).model_dump(mode="json")


@router.get("/{instance_id}")
def get_instance(instance_id: int, db: Session = Depends(get_db)):
    return {"statusCode": 200, "message": "Success", "data": _instance_payload(db, instance_id)}


@router.post("/{instance_id}/results")
def save_result(instance_id: int, payload: CaptureIn, db: Session = Depends(get_db)):
    record = capture(db, instance_id, payload.field_id, payload.value, payload.observations)
    data = CaptureOut(**instances.capture_to_dict(record)).model_dump(mode="json")
    return {"statusCode": 200, "message": "Result saved", "data": data}


@router.post("/{instance_id}/results/bulk")
def save_results(instance_id: int, payload: BulkCaptureIn, db: Session = Depends(get_db)):
    records = capture_many(db, instance_id, [item.model_dump() for item in payload.results])
    data = [CaptureOut(**instances.capture_to_dict(record)).model_dump(mode="json") for record in records]
    return {"statusCode": 200, "message": "Results saved", "data": data}


@router.post("/{instance_id}/begin")
def begin(instance_id: int, db: Session = Depends(get_db)):
    instances.begin_processing(db, instance_id)
    return {"statusCode": 200, "message": "Exam in process", "data": _instance_payload(db, instance_id)}


@router.post("/{instance_id}/complete")
def complete(instance_id: int, db: Session = Depends(get_db)):
    instances.complete(db, instance_id)
    return {"statusCode": 200, "message": "Exam completed", "data": _instance_payload(db, instance_id)}


@router.post("/{instance_id}/reopen")
def reopen(instance_id: int, payload: ReopenIn | None = None, db: Session = Depends(get_db)):
    instances.reopen(db, instance_id, payload.reason if payload else None)
    return {"statusCode": 200, "message": "Exam reopened", "data": _instance_payload(db, instance_id)}
