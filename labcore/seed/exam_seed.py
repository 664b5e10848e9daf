import logging

from labcore.database import SessionLocal
from labcore.models.exam import ExamDefinitionRecord
from labcore.schemas.exam import ExamDefinitionIn, FieldSchemaIn
from labcore.services.catalog import create_definition

logger = logging.getLogger(__name__)


SIMPLE_EXAMS = [
    {
        "code": "GLU",
        "name": "Glucosa",
        "sample_instructions": "Ayuno de 8 horas",
        "analysis_method": "Enzimático (GOD-PAP)",
        "fields": [
            {"name": "Glucosa", "data_type": "number", "unit": "mg/dL", "reference_expression": "70-110", "required": True},
        ],
    },
    {
        "code": "COL",
        "name": "Colesterol total",
        "fields": [
            {"name": "Colesterol total", "data_type": "number", "unit": "mg/dL", "reference_expression": "<200", "required": True},
        ],
    },
    {
        "code": "TRIG",
        "name": "Triglicéridos",
        "fields": [
            {"name": "Triglicéridos", "data_type": "number", "unit": "mg/dL", "reference_expression": "<150", "required": True},
        ],
    },
    {
        "code": "HDL",
        "name": "Colesterol HDL",
        "fields": [
            {"name": "HDL", "data_type": "number", "unit": "mg/dL", "reference_expression": ">=40", "required": True},
        ],
    },
    {
        "code": "HEMO",
        "name": "Hemograma completo",
        "analysis_method": "Citometría de flujo",
        "fields": [
            {"name": "Hemoglobina", "data_type": "number", "unit": "g/dL", "reference_expression": "12-16", "section": "Serie roja", "required": True},
            {"name": "Hematocrito", "data_type": "number", "unit": "%", "reference_expression": "36-48", "section": "Serie roja", "required": True},
            {"name": "Leucocitos", "data_type": "number", "unit": "x10^3/uL", "reference_expression": "4.5-11", "section": "Serie blanca", "required": True},
            {"name": "Plaquetas", "data_type": "number", "unit": "x10^3/uL", "reference_expression": "150-450", "section": "Plaquetas", "required": True},
            {"name": "Observaciones", "data_type": "longtext"},
        ],
        "section_titles": {"Serie roja": "Serie roja (eritrocitos)"},
    },
    {
        "code": "ORINA",
        "name": "Examen completo de orina",
        "fields": [
            {"name": "Color", "data_type": "select", "options": ["Amarillo", "Ámbar", "Rojizo"], "reference_expression": "Amarillo", "section": "Examen físico"},
            {"name": "Aspecto", "data_type": "select", "options": ["Transparente", "Turbio"], "reference_expression": "Transparente", "section": "Examen físico"},
            {"name": "pH", "data_type": "number", "reference_expression": "5-8", "section": "Examen químico", "required": True},
            {"name": "Proteínas", "data_type": "text", "reference_expression": "Negativo", "section": "Examen químico"},
            {"name": "Nitritos", "data_type": "boolean", "reference_expression": "false", "section": "Examen químico"},
        ],
    },
]

PROFILES = [
    {
        "code": "PLIP",
        "name": "Perfil lipídico",
        "type": "composite",
        "is_profile": True,
        "children": ["COL", "TRIG", "HDL"],
    },
    {
        "code": "PCHEQ",
        "name": "Chequeo preventivo",
        "type": "hybrid",
        "is_profile": True,
        "children": ["GLU", "HEMO"],
        "fields": [
            {"name": "Presión arterial", "data_type": "text", "section": "Evaluación clínica"},
            {"name": "Peso", "data_type": "number", "unit": "kg", "section": "Evaluación clínica", "required": True},
        ],
    },
]


def _payload(item: dict, child_ids: list[int] | None = None) -> ExamDefinitionIn:
    return ExamDefinitionIn(
        code=item["code"],
        name=item["name"],
        type=item.get("type", "simple"),
        is_profile=item.get("is_profile", False),
        sample_instructions=item.get("sample_instructions"),
        analysis_method=item.get("analysis_method"),
        fields=[FieldSchemaIn(**field) for field in item.get("fields", [])],
        child_exam_ids=child_ids or [],
        section_titles=item.get("section_titles", {}),
    )


def seed_exam_catalog():
    db = SessionLocal()
    try:
        existing = {row.code: row.id for row in db.query(ExamDefinitionRecord).all()}
        created = 0
        for item in SIMPLE_EXAMS:
            if item["code"] in existing:
                continue
            existing[item["code"]] = create_definition(db, _payload(item)).id
            created += 1

        for item in PROFILES:
            if item["code"] in existing:
                continue
            child_ids = [existing[code] for code in item["children"]]
            existing[item["code"]] = create_definition(db, _payload(item, child_ids)).id
            created += 1
        if created:
            logger.info("Seeded %s exam definitions", created)
    finally:
        db.close()
