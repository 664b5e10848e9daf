import pytest
from pydantic import ValidationError

from labcore.errors import DuplicateCodeError, InvalidCompositionError, NotFoundError
from labcore.models.exam import ExamDefinitionRecord, ExamType
from labcore.models.request import ResultCaptureRecord
from labcore.schemas.exam import ExamDefinitionIn, FieldSchemaIn
from labcore.services import catalog
from labcore.services.composition import (
    CatalogNode,
    CompositeExam,
    HybridExam,
    build_variant,
    check_acyclic,
    check_nesting,
)
from labcore.services.requests import create_request
from labcore.services.results import capture


def _payload(definition: ExamDefinitionRecord, **changes) -> ExamDefinitionIn:
    data = catalog.definition_to_dict(definition)
    data.update(changes)
    return ExamDefinitionIn(**data)


def test_build_variant_is_tagged_by_type():
    variant = build_variant(
        ExamDefinitionIn(code="PX", name="Px", type="hybrid", fields=[{"name": "Peso"}], child_exam_ids=[1, 2])
    )
    assert isinstance(variant, HybridExam)
    assert variant.child_exam_ids == (1, 2)
    assert len(variant.fields) == 1


def test_composite_cannot_have_fields():
    payload = ExamDefinitionIn(code="PX", name="Px", type="composite", fields=[{"name": "Peso"}], child_exam_ids=[1])
    with pytest.raises(InvalidCompositionError) as exc_info:
        build_variant(payload)
    assert exc_info.value.details["field_names"] == ["Peso"]


def test_composite_needs_children():
    with pytest.raises(InvalidCompositionError):
        CompositeExam(child_exam_ids=())


def test_simple_cannot_have_children():
    with pytest.raises(InvalidCompositionError) as exc_info:
        build_variant(ExamDefinitionIn(code="S", name="S", child_exam_ids=[4]))
    assert exc_info.value.offending_ids == [4]


def test_duplicate_children_rejected():
    payload = ExamDefinitionIn(code="C", name="C", type="composite", child_exam_ids=[3, 4, 3])
    with pytest.raises(InvalidCompositionError) as exc_info:
        build_variant(payload)
    assert exc_info.value.offending_ids == [3]


def test_check_acyclic_follows_grandchildren():
    nodes = {
        1: CatalogNode(id=1, is_profile=False, child_exam_ids=(2,)),
        2: CatalogNode(id=2, is_profile=False, child_exam_ids=(3,)),
        3: CatalogNode(id=3, is_profile=False, child_exam_ids=()),
    }
    check_acyclic(3, [4], nodes.get)
    with pytest.raises(InvalidCompositionError) as exc_info:
        check_acyclic(3, [1], nodes.get)
    assert exc_info.value.offending_ids == [1]


def test_select_field_needs_options():
    with pytest.raises(ValidationError):
        FieldSchemaIn(name="Color", data_type="select")


def test_create_assigns_order_from_position(make_exam):
    definition = make_exam(
        "HEMO",
        fields=[
            {"name": "Hemoglobina", "data_type": "number", "order": 9},
            {"name": "Leucocitos", "data_type": "number", "order": 0},
        ],
    )
    assert [(f.name, f.order) for f in definition.active_fields] == [("Hemoglobina", 0), ("Leucocitos", 1)]


def test_duplicate_code_is_case_insensitive(make_exam):
    make_exam("GLU")
    with pytest.raises(DuplicateCodeError):
        make_exam("glu")


def test_profile_cannot_include_profile(make_exam, glucose):
    lipid = make_exam("PLIP", type="composite", is_profile=True, child_exam_ids=[glucose.id])
    with pytest.raises(InvalidCompositionError) as exc_info:
        make_exam("BIG", type="composite", is_profile=True, child_exam_ids=[lipid.id])
    assert exc_info.value.offending_ids == [lipid.id]


def test_unknown_child_rejected(make_exam):
    with pytest.raises(InvalidCompositionError) as exc_info:
        make_exam("C", type="composite", child_exam_ids=[999])
    assert exc_info.value.offending_ids == [999]


def test_update_rejects_self_reference(db_session, make_exam, glucose):
    panel = make_exam("PAN", type="composite", child_exam_ids=[glucose.id])
    with pytest.raises(InvalidCompositionError):
        catalog.update_definition(db_session, panel.id, _payload(panel, child_exam_ids=[glucose.id, panel.id]))


def test_update_rejects_cycle(db_session, make_exam, glucose):
    inner = make_exam("IN", type="hybrid", child_exam_ids=[glucose.id])
    outer = make_exam("OUT", type="hybrid", child_exam_ids=[inner.id])
    with pytest.raises(InvalidCompositionError) as exc_info:
        catalog.update_definition(db_session, inner.id, _payload(inner, child_exam_ids=[glucose.id, outer.id]))
    assert exc_info.value.offending_ids == [outer.id]


def test_child_cannot_become_profile(db_session, make_exam, glucose):
    make_exam("PAN", type="composite", child_exam_ids=[glucose.id])
    with pytest.raises(InvalidCompositionError):
        catalog.update_definition(
            db_session, glucose.id, _payload(glucose, type="hybrid", is_profile=True, child_exam_ids=[])
        )


def test_update_missing_definition(db_session):
    payload = ExamDefinitionIn(code="X", name="X")
    with pytest.raises(NotFoundError):
        catalog.update_definition(db_session, 404, payload)


def test_update_edits_uncaptured_field_in_place(db_session, glucose):
    field = glucose.active_fields[0]
    fields = [{**catalog.field_to_dict(field), "reference_expression": "70-100"}]
    updated = catalog.update_definition(db_session, glucose.id, _payload(glucose, fields=fields))
    assert [(f.id, f.reference_expression, f.version) for f in updated.fields] == [(field.id, "70-100", 1)]


def test_update_versions_captured_field(db_session, glucose):
    field = glucose.active_fields[0]
    request = create_request(db_session, [glucose.id])
    capture(db_session, request.instances[0].id, field.id, "95")

    fields = [{**catalog.field_to_dict(field), "reference_expression": "70-100"}]
    updated = catalog.update_definition(
        db_session, glucose.id, _payload(glucose, fields=fields, change_reason="new kit")
    )

    retired = db_session.get(type(field), field.id)
    assert retired.active is False
    assert retired.deactivated_at is not None
    (current,) = updated.active_fields
    assert current.id != field.id
    assert current.version == 2
    assert current.reference_expression == "70-100"
    stored = db_session.query(ResultCaptureRecord).one()
    assert stored.field_id == field.id
    assert stored.reference_expression == "70-110"


def test_update_removes_uncaptured_fields_and_reorders(db_session, make_exam):
    definition = make_exam("ORI", fields=[{"name": "Color"}, {"name": "pH"}, {"name": "Nitritos"}])
    color, ph, nitrites = definition.active_fields
    fields = [catalog.field_to_dict(nitrites), catalog.field_to_dict(color)]
    updated = catalog.update_definition(db_session, definition.id, _payload(definition, fields=fields))
    assert [(f.name, f.order) for f in updated.active_fields] == [("Nitritos", 0), ("Color", 1)]
    assert all(f.id != ph.id for f in updated.fields)


def test_deactivate_and_activate(db_session, make_exam, glucose):
    panel = make_exam("PAN", type="composite", child_exam_ids=[glucose.id])
    catalog.deactivate(db_session, glucose.id)
    assert glucose.active is False
    # no cascade to parents
    assert db_session.get(ExamDefinitionRecord, panel.id).active is True
    assert glucose.id not in [d.id for d in catalog.list_definitions(db_session)]
    assert glucose.id in [d.id for d in catalog.list_definitions(db_session, include_inactive=True)]
    catalog.activate(db_session, glucose.id)
    assert glucose.active is True


def test_search_matches_code_and_name(make_exam, db_session):
    make_exam("GLU", name="Glucosa")
    make_exam("HEMO", name="Hemograma completo")
    make_exam("TRIG", name="Triglicéridos")

    names = [d.name for d, _ in catalog.search_definitions(db_session, "hemograma")]
    assert names[0] == "Hemograma completo"
    by_code = catalog.search_definitions(db_session, "glu")
    assert by_code[0][0].code == "GLU"
    assert by_code[0][1] >= 70
    assert len(catalog.search_definitions(db_session, None, limit=2)) == 2


def test_collect_fields_tags_origin(db_session, make_exam, glucose):
    checkup = make_exam(
        "PCHEQ",
        type="hybrid",
        is_profile=True,
        child_exam_ids=[glucose.id],
        fields=[{"name": "Peso", "data_type": "number", "required": True}],
    )
    collected = catalog.collect_fields(db_session, checkup)
    assert [(f["name"], f["origin_exam_id"], f["own"]) for f in collected] == [
        ("Peso", checkup.id, True),
        ("Glucosa", glucose.id, False),
    ]


def test_composite_cannot_be_a_child(make_exam, glucose):
    panel = make_exam("PAN", type="composite", child_exam_ids=[glucose.id])
    with pytest.raises(InvalidCompositionError) as exc_info:
        make_exam("BIG", type="composite", child_exam_ids=[panel.id])
    assert exc_info.value.offending_ids == [panel.id]


def test_nesting_limited_to_two_levels(make_exam, glucose):
    inner = make_exam("H1", type="hybrid", child_exam_ids=[glucose.id])
    middle = make_exam("H2", type="hybrid", child_exam_ids=[inner.id])
    with pytest.raises(InvalidCompositionError) as exc_info:
        make_exam("H3", type="hybrid", child_exam_ids=[middle.id])
    assert exc_info.value.offending_ids == [middle.id]


def test_included_exam_cannot_deepen_the_tree(db_session, make_exam, glucose):
    inner = make_exam("H1", type="hybrid", child_exam_ids=[glucose.id])
    child = make_exam("CH", fields=[{"name": "Peso"}])
    make_exam("TOP", type="hybrid", child_exam_ids=[child.id])

    with pytest.raises(InvalidCompositionError) as exc_info:
        catalog.update_definition(db_session, child.id, _payload(child, type="hybrid", child_exam_ids=[inner.id]))
    assert exc_info.value.offending_ids == [inner.id]

    with pytest.raises(InvalidCompositionError):
        catalog.update_definition(
            db_session, child.id, _payload(child, type="composite", fields=[], child_exam_ids=[glucose.id])
        )

    updated = catalog.update_definition(db_session, child.id, _payload(child, type="hybrid", child_exam_ids=[glucose.id]))
    assert updated.child_exam_ids == [glucose.id]


def test_check_nesting_on_catalog_nodes():
    nodes = {
        1: CatalogNode(id=1, is_profile=False, child_exam_ids=()),
        2: CatalogNode(id=2, is_profile=False, child_exam_ids=(1,), exam_type=ExamType.HYBRID),
        3: CatalogNode(id=3, is_profile=False, child_exam_ids=(1,), exam_type=ExamType.COMPOSITE),
    }
    variant = build_variant(ExamDefinitionIn(code="X", name="X", type="composite", child_exam_ids=[1, 2]))
    check_nesting(variant, nodes.get, [])
    with pytest.raises(InvalidCompositionError):
        check_nesting(variant, nodes.get, [9])
    composite_child = build_variant(ExamDefinitionIn(code="Y", name="Y", type="hybrid", child_exam_ids=[3]))
    with pytest.raises(InvalidCompositionError) as exc_info:
        check_nesting(composite_child, nodes.get, [])
    assert exc_info.value.offending_ids == [3]
