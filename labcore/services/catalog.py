import json
import logging
import re
from typing import Any

from rapidfuzz import fuzz
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from labcore.config import settings
from labcore.database import utcnow
from labcore.errors import DuplicateCodeError, NotFoundError
from labcore.models.exam import ExamChildLink, ExamDefinitionRecord, ExamType, FieldSchemaRecord
from labcore.models.request import ResultCaptureRecord
from labcore.schemas.exam import ExamDefinitionIn, FieldSchemaIn
from labcore.services.composition import (
    CatalogNode,
    ExamVariant,
    build_variant,
    check_acyclic,
    check_children,
    check_nesting,
    check_profile_flag,
)
from labcore.services.locks import definition_key, locks
from labcore.services.ranges import load_options

logger = logging.getLogger(__name__)


def _normalize(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "", text.lower())


def load_section_titles(raw_titles: str | None) -> dict[str, str]:
    if not raw_titles:
        return {}
    try:
        parsed = json.loads(raw_titles)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        return {str(key): str(value) for key, value in parsed.items()}
    return {}


def _dump_section_titles(titles: dict[str, str]) -> str:
    cleaned = {key.strip(): value.strip() for key, value in titles.items() if key.strip() and value.strip()}
    return json.dumps(cleaned)


def field_to_dict(field: FieldSchemaRecord) -> dict[str, Any]:
    return {
        "id": field.id,
        "name": field.name,
        "data_type": field.data_type,
        "unit": field.unit,
        "reference_expression": field.reference_expression,
        "section": field.section,
        "order": field.order,
        "required": field.required,
        "options": load_options(field.options),
        "description": field.description,
        "active": field.active,
        "version": field.version,
    }


def definition_to_dict(definition: ExamDefinitionRecord, include_retired_fields: bool = False) -> dict[str, Any]:
    fields = definition.fields if include_retired_fields else definition.active_fields
    return {
        "id": definition.id,
        "code": definition.code,
        "name": definition.name,
        "category_id": definition.category_id,
        "type": definition.exam_type,
        "is_profile": definition.is_profile,
        "active": definition.active,
        "sample_instructions": definition.sample_instructions,
        "analysis_method": definition.analysis_method,
        "fields": [field_to_dict(f) for f in fields],
        "child_exam_ids": definition.child_exam_ids,
        "section_titles": load_section_titles(definition.section_titles),
        "created_at": definition.created_at,
        "updated_at": definition.updated_at,
    }


def get_definition(db: Session, definition_id: int) -> ExamDefinitionRecord:
    definition = db.get(ExamDefinitionRecord, definition_id)
    if definition is None:
        raise NotFoundError("Exam definition", definition_id)
    return definition


def _catalog_lookup(db: Session):
    cache: dict[int, CatalogNode | None] = {}

    def lookup(definition_id: int) -> CatalogNode | None:
        if definition_id not in cache:
            record = db.get(ExamDefinitionRecord, definition_id)
            cache[definition_id] = (
                None
                if record is None
                else CatalogNode(
                    id=record.id,
                    is_profile=record.is_profile,
                    child_exam_ids=tuple(record.child_exam_ids),
                    exam_type=ExamType(record.exam_type),
                )
            )
        return cache[definition_id]

    return lookup


def _parent_ids(db: Session, definition_id: int) -> list[int]:
    rows = db.query(ExamChildLink.parent_id).filter(ExamChildLink.child_id == definition_id).all()
    return sorted({parent_id for (parent_id,) in rows})


def _assert_code_free(db: Session, code: str, definition_id: int | None = None) -> None:
    query = db.query(ExamDefinitionRecord.id).filter(func.lower(ExamDefinitionRecord.code) == code.lower())
    if definition_id is not None:
        query = query.filter(ExamDefinitionRecord.id != definition_id)
    if query.first() is not None:
        raise DuplicateCodeError(code)


def _field_payload(item: FieldSchemaIn) -> dict[str, Any]:
    return {
        "name": item.name,
        "data_type": item.data_type.value,
        "unit": item.unit,
        "reference_expression": item.reference_expression,
        "section": item.section,
        "required": item.required,
        "options": json.dumps(item.options),
        "description": item.description,
    }


def _same_content(field: FieldSchemaRecord, payload: dict[str, Any]) -> bool:
    return all(getattr(field, key) == value for key, value in payload.items())


def _captured_field_ids(db: Session, field_ids: list[int]) -> set[int]:
    if not field_ids:
        return set()
    rows = (
        db.query(ResultCaptureRecord.field_id)
        .filter(ResultCaptureRecord.field_id.in_(field_ids))
        .distinct()
        .all()
    )
    return {field_id for (field_id,) in rows}


def _retire(field: FieldSchemaRecord, reason: str | None) -> None:
    field.active = False
    field.deactivated_at = utcnow()
    field.change_reason = reason


def _replace_fields(
    db: Session,
    definition: ExamDefinitionRecord,
    wanted: tuple[FieldSchemaIn, ...],
    change_reason: str | None,
) -> None:
    """Replace the active field list wholesale.

    ``order`` is the position in ``wanted``. A field that already has captured
    results is never edited in place: it is retired and a new version takes
    its place, so stored results keep pointing at the definition they were
    captured against.
    """
    existing = {field.id: field for field in definition.active_fields}
    captured = _captured_field_ids(db, list(existing))
    kept: set[int] = set()

    for position, item in enumerate(wanted):
        payload = _field_payload(item)
        current = existing.get(item.id) if item.id is not None else None
        if current is None or current.id in kept:
            definition.fields.append(FieldSchemaRecord(order=position, version=1, **payload))
            continue

        kept.add(current.id)
        if _same_content(current, payload):
            current.order = position
        elif current.id in captured:
            _retire(current, change_reason or "edited after results were captured")
            definition.fields.append(
                FieldSchemaRecord(order=position, version=current.version + 1, change_reason=change_reason, **payload)
            )
            logger.info("Field %s of exam %s retired as version %s", current.id, definition.code, current.version)
        else:
            for key, value in payload.items():
                setattr(current, key, value)
            current.order = position

    for field_id, field in existing.items():
        if field_id in kept:
            continue
        if field_id in captured:
            _retire(field, change_reason or "removed from exam definition")
        else:
            definition.fields.remove(field)


def _replace_children(definition: ExamDefinitionRecord, child_exam_ids: tuple[int, ...]) -> None:
    current = {link.child_id: link for link in definition.child_links}
    wanted = set(child_exam_ids)
    for child_id, link in current.items():
        if child_id not in wanted:
            definition.child_links.remove(link)
    for position, child_id in enumerate(child_exam_ids):
        link = current.get(child_id)
        if link is None:
            definition.child_links.append(ExamChildLink(child_id=child_id, position=position))
        else:
            link.position = position


def _apply(db: Session, definition: ExamDefinitionRecord, payload: ExamDefinitionIn, variant: ExamVariant) -> None:
    definition.code = payload.code
    definition.name = payload.name
    definition.category_id = payload.category_id
    definition.exam_type = variant.type.value
    definition.is_profile = variant.is_profile
    definition.active = payload.active
    definition.sample_instructions = payload.sample_instructions
    definition.analysis_method = payload.analysis_method
    definition.section_titles = _dump_section_titles(payload.section_titles)
    _replace_fields(db, definition, variant.fields, payload.change_reason)
    _replace_children(definition, variant.child_exam_ids)


def _commit(db: Session, code: str) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateCodeError(code) from exc


def create_definition(db: Session, payload: ExamDefinitionIn) -> ExamDefinitionRecord:
    variant = build_variant(payload)
    _assert_code_free(db, payload.code)
    lookup = _catalog_lookup(db)
    check_children(variant, lookup)
    check_nesting(variant, lookup, [])

    definition = ExamDefinitionRecord()
    db.add(definition)
    _apply(db, definition, payload, variant)
    _commit(db, payload.code)
    db.refresh(definition)
    logger.info(
        "Created %s exam %s (id=%s, fields=%s, children=%s)",
        definition.exam_type,
        definition.code,
        definition.id,
        len(definition.active_fields),
        len(definition.child_links),
    )
    return definition


def update_definition(db: Session, definition_id: int, payload: ExamDefinitionIn) -> ExamDefinitionRecord:
    variant = build_variant(payload)
    with locks.hold(definition_key(definition_id)):
        definition = (
            db.query(ExamDefinitionRecord)
            .filter(ExamDefinitionRecord.id == definition_id)
            .with_for_update()
            .first()
        )
        if definition is None:
            raise NotFoundError("Exam definition", definition_id)

        _assert_code_free(db, payload.code, definition_id)
        lookup = _catalog_lookup(db)
        check_children(variant, lookup, definition_id)
        check_acyclic(definition_id, variant.child_exam_ids, lookup)
        parent_ids = _parent_ids(db, definition_id)
        check_profile_flag(definition_id, variant.is_profile, parent_ids)
        check_nesting(variant, lookup, parent_ids)

        _apply(db, definition, payload, variant)
        _commit(db, payload.code)
        db.refresh(definition)
    logger.info("Updated exam %s (id=%s)", definition.code, definition.id)
    return definition


def _set_active(db: Session, definition_id: int, active: bool) -> ExamDefinitionRecord:
    with locks.hold(definition_key(definition_id)):
        definition = (
            db.query(ExamDefinitionRecord)
            .filter(ExamDefinitionRecord.id == definition_id)
            .with_for_update()
            .first()
        )
        if definition is None:
            raise NotFoundError("Exam definition", definition_id)
        if definition.active != active:
            definition.active = active
            db.commit()
            db.refresh(definition)
            logger.info("Exam %s (id=%s) active=%s", definition.code, definition.id, active)
    return definition


def deactivate(db: Session, definition_id: int) -> ExamDefinitionRecord:
    return _set_active(db, definition_id, False)


def activate(db: Session, definition_id: int) -> ExamDefinitionRecord:
    return _set_active(db, definition_id, True)


def list_definitions(db: Session, include_inactive: bool = False) -> list[ExamDefinitionRecord]:
    query = db.query(ExamDefinitionRecord)
    if not include_inactive:
        query = query.filter(ExamDefinitionRecord.active.is_(True))
    return query.order_by(ExamDefinitionRecord.name.asc(), ExamDefinitionRecord.id.asc()).all()


def _search_score(query: str, definition: ExamDefinitionRecord) -> float:
    query_norm = _normalize(query)
    code_score = fuzz.ratio(query_norm, _normalize(definition.code))
    name_score = max(
        fuzz.partial_ratio(query_norm, _normalize(definition.name)),
        fuzz.token_set_ratio(query.lower(), definition.name.lower()),
    )
    return float(max(code_score, name_score))


def search_definitions(
    db: Session,
    query: str | None,
    limit: int | None = None,
    include_inactive: bool = False,
    threshold: int | None = None,
) -> list[tuple[ExamDefinitionRecord, float | None]]:
    """Fuzzy catalog lookup by code or name, best matches first."""
    max_items = limit if limit is not None else settings.search_default_limit
    candidates = list_definitions(db, include_inactive=include_inactive)
    if not query or not _normalize(query):
        return [(definition, None) for definition in candidates[:max_items]]

    score_threshold = threshold if threshold is not None else settings.search_fuzzy_threshold
    scored = [(definition, _search_score(query, definition)) for definition in candidates]
    matches = [item for item in scored if item[1] >= score_threshold]
    matches.sort(key=lambda item: (-item[1], item[0].name))
    return matches[:max_items]


def collect_fields(db: Session, definition: ExamDefinitionRecord) -> list[dict[str, Any]]:
    """Own fields followed by each child's fields, tagged with the exam they come from."""
    collected: list[dict[str, Any]] = []
    if definition.exam_type in (ExamType.SIMPLE.value, ExamType.HYBRID.value):
        for field in definition.active_fields:
            collected.append(
                {**field_to_dict(field), "origin_exam_id": definition.id, "origin_exam_name": definition.name, "own": True}
            )
    if definition.exam_type in (ExamType.COMPOSITE.value, ExamType.HYBRID.value):
        for link in definition.child_links:
            child = get_definition(db, link.child_id)
            for field in collect_fields(db, child):
                collected.append({**field, "own": False})
    return collected
