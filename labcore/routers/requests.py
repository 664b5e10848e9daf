import json

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from labcore.database import get_db
from labcore.schemas.results import RequestAggregateOut, RequestCreateIn
from labcore.services.request_view import build_request_view
from labcore.services.requests import create_request, get_request_status

router = APIRouter(prefix="/api/requests", tags=["requests"])


def _parse_titles(raw: str | None) -> dict[str, str] | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="section_titles must be a JSON object") from None
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=400, detail="section_titles must be a JSON object")
    return {str(key): str(value) for key, value in parsed.items()}


@router.post("")
def create(payload: RequestCreateIn, db: Session = Depends(get_db)):
    request = create_request(db, payload.exam_ids, reference=payload.reference)
    return {"statusCode": 200, "message": "Request created", "data": build_request_view(db, request.id)}


@router.get("/{request_id}")
def view(
    request_id: int,
    section_titles: str | None = Query(default=None, description="JSON object mapping section keys to titles"),
    db: Session = Depends(get_db),
):
    data = build_request_view(db, request_id, _parse_titles(section_titles))
    return {"statusCode": 200, "message": "Success", "data": data}


@router.get("/{request_id}/status")
def status(request_id: int, db: Session = Depends(get_db)):
    summary = get_request_status(db, request_id)
    return {"statusCode": 200, "message": "Success", "data": RequestAggregateOut(**summary.to_dict()).model_dump()}
