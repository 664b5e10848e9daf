import threading

import pytest

from labcore.config import settings
from labcore.errors import (
    ConcurrencyConflictError,
    IncompleteDataError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    TypeMismatchError,
)
from labcore.models.request import ExamInstanceRecord, ResultCaptureRecord
from labcore.services import catalog
from labcore.services.instances import begin_processing, complete, get_instance, instantiate, reopen
from labcore.services.locks import KeyedLocks, instance_key, locks
from labcore.services.requests import create_request, get_request_status
from labcore.services.results import capture, capture_many


@pytest.fixture()
def lipid_panel(make_exam):
    children = [
        make_exam(code, fields=[{"name": code, "data_type": "number", "reference_expression": expression, "required": True}])
        for code, expression in [("COL", "<200"), ("TRIG", "<150")]
    ]
    return make_exam("PLIP", type="composite", is_profile=True, child_exam_ids=[c.id for c in children])


def _single_instance(db_session, definition) -> ExamInstanceRecord:
    request = create_request(db_session, [definition.id])
    return request.top_level_instances[0]


def test_instantiate_builds_children_in_order(db_session, lipid_panel):
    instance = _single_instance(db_session, lipid_panel)
    assert instance.state == "pending"
    assert [child.definition.code for child in instance.children] == ["COL", "TRIG"]
    assert all(child.state == "pending" for child in instance.children)
    assert all(child.request_id == instance.request_id for child in instance.children)


def test_instantiate_adds_to_existing_request(db_session, glucose, lipid_panel):
    request = create_request(db_session, [glucose.id])
    added = instantiate(db_session, request.id, lipid_panel.id)
    assert added.position == 1
    assert get_request_status(db_session, request.id).total == 2


def test_inactive_definition_cannot_be_requested(db_session, glucose):
    catalog.deactivate(db_session, glucose.id)
    with pytest.raises(InvalidStateError):
        create_request(db_session, [glucose.id])
    assert db_session.query(ExamInstanceRecord).count() == 0


def test_begin_processing_is_idempotent(db_session, glucose):
    instance = _single_instance(db_session, glucose)
    begin_processing(db_session, instance.id)
    again = begin_processing(db_session, instance.id)
    assert again.state == "in_process"


def test_begin_promotes_pending_parent(db_session, lipid_panel):
    parent = _single_instance(db_session, lipid_panel)
    begin_processing(db_session, parent.children[0].id)
    db_session.refresh(parent)
    assert parent.state == "in_process"
    assert parent.children[1].state == "pending"


def test_capture_promotes_instance_and_flags_range(db_session, glucose):
    instance = _single_instance(db_session, glucose)
    field = glucose.active_fields[0]
    record = capture(db_session, instance.id, field.id, "135", observations="hemolizada")
    assert record.out_of_range is True
    assert record.unit == "mg/dL"
    assert record.reference_expression == "70-110"
    assert get_instance(db_session, instance.id).state == "in_process"


def test_capture_overwrites_previous_value(db_session, glucose):
    instance = _single_instance(db_session, glucose)
    field = glucose.active_fields[0]
    capture(db_session, instance.id, field.id, "135")
    record = capture(db_session, instance.id, field.id, "90")
    assert record.value == "90"
    assert record.out_of_range is False
    assert db_session.query(ResultCaptureRecord).count() == 1


def test_capture_rejects_foreign_field(db_session, glucose, lipid_panel):
    instance = _single_instance(db_session, glucose)
    foreign_field = lipid_panel.child_links[0].child.active_fields[0]
    with pytest.raises(NotFoundError):
        capture(db_session, instance.id, foreign_field.id, "120")


def test_capture_on_composite_rejected(db_session, glucose, lipid_panel):
    parent = _single_instance(db_session, lipid_panel)
    with pytest.raises(InvalidStateError):
        capture(db_session, parent.id, glucose.active_fields[0].id, "90")


def test_child_capture_promotes_composite(db_session, lipid_panel):
    parent = _single_instance(db_session, lipid_panel)
    child = parent.children[0]
    capture(db_session, child.id, child.definition.active_fields[0].id, "180")
    assert get_instance(db_session, parent.id).state == "in_process"


def test_capture_many_is_all_or_nothing(db_session, make_exam):
    definition = make_exam(
        "ORINA",
        fields=[
            {"name": "pH", "data_type": "number", "reference_expression": "5-8"},
            {"name": "Aspecto", "data_type": "select", "options": ["Transparente", "Turbio"]},
        ],
    )
    ph, aspect = definition.active_fields
    instance = _single_instance(db_session, definition)

    with pytest.raises(TypeMismatchError):
        capture_many(
            db_session,
            instance.id,
            [{"field_id": ph.id, "value": "6"}, {"field_id": aspect.id, "value": "Lechoso"}],
        )
    assert db_session.query(ResultCaptureRecord).count() == 0
    assert get_instance(db_session, instance.id).state == "pending"

    records = capture_many(
        db_session,
        instance.id,
        [{"field_id": ph.id, "value": "9"}, {"field_id": aspect.id, "value": "turbio"}],
    )
    assert [(r.value, r.out_of_range) for r in records] == [("9", True), ("Turbio", False)]
    assert get_instance(db_session, instance.id).state == "in_process"


def test_complete_requires_required_fields(db_session, glucose):
    instance = _single_instance(db_session, glucose)
    with pytest.raises(IncompleteDataError) as exc_info:
        complete(db_session, instance.id)
    assert exc_info.value.missing_fields == ["Glucosa"]

    capture(db_session, instance.id, glucose.active_fields[0].id, "99")
    completed = complete(db_session, instance.id)
    assert completed.state == "completed"
    assert completed.completed_at is not None


def test_completed_instance_is_frozen(db_session, glucose):
    instance = _single_instance(db_session, glucose)
    field_id = glucose.active_fields[0].id
    capture(db_session, instance.id, field_id, "99")
    complete(db_session, instance.id)

    with pytest.raises(InvalidStateError):
        capture(db_session, instance.id, field_id, "100")
    with pytest.raises(InvalidTransitionError):
        begin_processing(db_session, instance.id)
    with pytest.raises(InvalidTransitionError):
        complete(db_session, instance.id)
    assert get_instance(db_session, instance.id).captures[0].value == "99"


def test_composite_completion_waits_for_children(db_session, lipid_panel):
    parent = _single_instance(db_session, lipid_panel)
    first, second = parent.children
    capture(db_session, first.id, first.definition.active_fields[0].id, "180")
    complete(db_session, first.id)

    with pytest.raises(IncompleteDataError) as exc_info:
        complete(db_session, parent.id)
    assert exc_info.value.incomplete_children == [second.id]
    assert exc_info.value.missing_fields == []

    capture(db_session, second.id, second.definition.active_fields[0].id, "120")
    complete(db_session, second.id)
    assert complete(db_session, parent.id).state == "completed"


def test_reopen_returns_to_in_process(db_session, glucose):
    instance = _single_instance(db_session, glucose)
    capture(db_session, instance.id, glucose.active_fields[0].id, "99")
    complete(db_session, instance.id)

    reopened = reopen(db_session, instance.id, "wrong sample")
    assert reopened.state == "in_process"
    assert reopened.completed_at is None
    capture(db_session, instance.id, glucose.active_fields[0].id, "101")


def test_reopen_only_from_completed(db_session, glucose):
    instance = _single_instance(db_session, glucose)
    with pytest.raises(InvalidTransitionError):
        reopen(db_session, instance.id)


def test_reopen_child_of_completed_parent_refused(db_session, lipid_panel):
    parent = _single_instance(db_session, lipid_panel)
    for child in parent.children:
        capture(db_session, child.id, child.definition.active_fields[0].id, "100")
        complete(db_session, child.id)
    complete(db_session, parent.id)

    with pytest.raises(InvalidStateError):
        reopen(db_session, parent.children[0].id)


def test_locked_instance_times_out(db_session, glucose, monkeypatch):
    instance = _single_instance(db_session, glucose)
    monkeypatch.setattr(settings, "lock_timeout_seconds", 0.05)
    with locks.hold(instance_key(instance.id)):
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            begin_processing(db_session, instance.id)
    assert exc_info.value.key == instance_key(instance.id)
    assert get_instance(db_session, instance.id).state == "pending"


def test_keyed_locks_are_independent():
    registry = KeyedLocks()
    acquired = []

    def worker():
        with registry.hold("instance:2", timeout=1):
            acquired.append("instance:2")

    with registry.hold("instance:1", timeout=1):
        assert registry.is_held("instance:1")
        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()
    assert acquired == ["instance:2"]
    assert not registry.is_held("instance:1")


def test_keyed_locks_forget_released_keys():
    registry = KeyedLocks()
    for number in range(1000):
        with registry.hold(f"instance:{number}", timeout=1):
            assert len(registry) == 1
    assert len(registry) == 0


def test_keyed_locks_keep_entry_while_waiting():
    registry = KeyedLocks()
    with registry.hold("definition:7", timeout=1):
        with pytest.raises(ConcurrencyConflictError):
            with registry.hold("definition:7", timeout=0.01):
                pass
        # the failed waiter left, the holder is still registered
        assert registry.is_held("definition:7")
        assert len(registry) == 1
    assert len(registry) == 0
