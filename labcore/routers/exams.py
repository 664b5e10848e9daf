from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from labcore.database import get_db
from labcore.schemas.exam import ExamDefinitionIn, ExamDefinitionOut, ExamSearchItem
from labcore.services import catalog
from labcore.services.sections import group_by_section

router = APIRouter(prefix="/api/exams", tags=["exams"])


def _definition_payload(definition, include_retired_fields: bool = False) -> dict:
    data = catalog.definition_to_dict(definition, include_retired_fields=include_retired_fields)
    return ExamDefinitionOut(**data).model_dump(mode="json")


@router.post("")
def create_exam(payload: ExamDefinitionIn, db: Session = Depends(get_db)):
    definition = catalog.create_definition(db, payload)
    return {"statusCode": 200, "message": "Exam created", "data": _definition_payload(definition)}


@router.get("")
def list_exams(
    q: str | None = Query(default=None, max_length=100),
    include_inactive: bool = False,
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    matches = catalog.search_definitions(db, q, limit=limit, include_inactive=include_inactive)
    items = [
        ExamSearchItem(
            id=definition.id,
            code=definition.code,
            name=definition.name,
            type=definition.exam_type,
            is_profile=definition.is_profile,
            active=definition.active,
            score=score,
        ).model_dump()
        for definition, score in matches
    ]
    return {"statusCode": 200, "message": "Success", "data": {"exams": items, "total": len(items)}}


@router.get("/{exam_id}")
def get_exam(exam_id: int, include_retired_fields: bool = False, db: Session = Depends(get_db)):
    definition = catalog.get_definition(db, exam_id)
    return {"statusCode": 200, "message": "Success", "data": _definition_payload(definition, include_retired_fields)}


@router.get("/{exam_id}/fields")
def exam_fields_by_section(exam_id: int, db: Session = Depends(get_db)):
    definition = catalog.get_definition(db, exam_id)
    titles = catalog.load_section_titles(definition.section_titles)
    buckets = group_by_section(catalog.collect_fields(db, definition), titles)
    return {
        "statusCode": 200,
        "message": "Success",
        "data": [{"key": bucket.key, "title": bucket.title, "fields": bucket.items} for bucket in buckets],
    }


@router.put("/{exam_id}")
def update_exam(exam_id: int, payload: ExamDefinitionIn, db: Session = Depends(get_db)):
    definition = catalog.update_definition(db, exam_id, payload)
    return {"statusCode": 200, "message": "Exam updated", "data": _definition_payload(definition)}


@router.post("/{exam_id}/deactivate")
def deactivate_exam(exam_id: int, db: Session = Depends(get_db)):
    definition = catalog.deactivate(db, exam_id)
    return {"statusCode": 200, "message": "Exam deactivated", "data": _definition_payload(definition)}


@router.post("/{exam_id}/activate")
def activate_exam(exam_id: int, db: Session = Depends(get_db)):
    definition = catalog.activate(db, exam_id)
    return {"statusCode": 200, "message": "Exam activated", "data": _definition_payload(definition)}
