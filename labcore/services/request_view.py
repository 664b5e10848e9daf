from collections.abc import Mapping
from typing import Any

from sqlalchemy.orm import Session

from labcore.models.request import ExamInstanceRecord
from labcore.services.aggregate import aggregate
from labcore.services.catalog import load_section_titles
from labcore.services.instances import capture_to_dict
from labcore.services.requests import get_request
from labcore.services.sections import group_by_section


def _instance_view(instance: ExamInstanceRecord, title_overrides: Mapping[str, str] | None) -> dict[str, Any]:
    definition = instance.definition
    titles = {**load_section_titles(definition.section_titles), **(title_overrides or {})}
    buckets = group_by_section(instance.captures, titles)
    return {
        "instance_id": instance.id,
        "exam": {
            "id": definition.id,
            "code": definition.code,
            "name": definition.name,
            "type": definition.exam_type,
            "is_profile": definition.is_profile,
        },
        "state": instance.state,
        "completed_at": instance.completed_at.isoformat() if instance.completed_at else None,
        "out_of_range_count": sum(1 for capture in instance.captures if capture.out_of_range),
        "sections": [
            {
                "key": bucket.key,
                "title": bucket.title,
                "results": [capture_to_dict(capture) for capture in bucket.items],
            }
            for bucket in buckets
        ],
        "children": [_instance_view(child, title_overrides) for child in instance.children],
    }


def build_request_view(
    db: Session,
    request_id: int,
    section_titles: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Snapshot of a request for list, print and PDF consumers: plain nested data, no markup."""
    request = get_request(db, request_id)
    status = aggregate(request.instances)
    return {
        "request": {
            "id": request.id,
            "reference": request.reference,
            "created_at": request.created_at.isoformat(),
        },
        "status": status.to_dict(),
        "exams": [_instance_view(instance, section_titles) for instance in request.top_level_instances],
    }
