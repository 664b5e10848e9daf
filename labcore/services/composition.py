"""
Exam definition variants and composition rules.

An authoring payload is turned into exactly one of ``SimpleExam``,
``CompositeExam`` or ``HybridExam``. Each variant checks its own shape when it
is built; rules that need the rest of the catalog (child existence, nested
profiles, cycles) live in ``check_children`` and ``check_acyclic``.
"""
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from labcore.errors import InvalidCompositionError
from labcore.models.exam import ExamType
from labcore.schemas.exam import ExamDefinitionIn, FieldSchemaIn


@dataclass(frozen=True)
class SimpleExam:
    fields: tuple[FieldSchemaIn, ...]
    type: ExamType = ExamType.SIMPLE

    @property
    def is_profile(self) -> bool:
        return False

    @property
    def child_exam_ids(self) -> tuple[int, ...]:
        return ()


@dataclass(frozen=True)
class CompositeExam:
    child_exam_ids: tuple[int, ...]
    is_profile: bool = False
    type: ExamType = ExamType.COMPOSITE

    def __post_init__(self):
        if not self.child_exam_ids:
            raise InvalidCompositionError("A composite exam needs at least one child exam")

    @property
    def fields(self) -> tuple[FieldSchemaIn, ...]:
        return ()


@dataclass(frozen=True)
class HybridExam:
    fields: tuple[FieldSchemaIn, ...]
    child_exam_ids: tuple[int, ...]
    is_profile: bool = False
    type: ExamType = ExamType.HYBRID


ExamVariant = SimpleExam | CompositeExam | HybridExam


def _duplicates(ids: Iterable[int]) -> list[int]:
    seen: set[int] = set()
    repeated: list[int] = []
    for exam_id in ids:
        if exam_id in seen and exam_id not in repeated:
            repeated.append(exam_id)
        seen.add(exam_id)
    return repeated


def _build_simple(payload: ExamDefinitionIn) -> SimpleExam:
    if payload.child_exam_ids:
        raise InvalidCompositionError(
            "A simple exam cannot include other exams", offending_ids=payload.child_exam_ids
        )
    return SimpleExam(fields=tuple(payload.fields))


def _build_composite(payload: ExamDefinitionIn) -> CompositeExam:
    if payload.fields:
        raise InvalidCompositionError(
            "A composite exam cannot define its own fields; use a hybrid exam instead",
            details={"field_names": [f.name for f in payload.fields]},
        )
    return CompositeExam(child_exam_ids=tuple(payload.child_exam_ids), is_profile=payload.is_profile)


def _build_hybrid(payload: ExamDefinitionIn) -> HybridExam:
    return HybridExam(
        fields=tuple(payload.fields),
        child_exam_ids=tuple(payload.child_exam_ids),
        is_profile=payload.is_profile,
    )


_BUILDERS: dict[ExamType, Callable[[ExamDefinitionIn], ExamVariant]] = {
    ExamType.SIMPLE: _build_simple,
    ExamType.COMPOSITE: _build_composite,
    ExamType.HYBRID: _build_hybrid,
}


def build_variant(payload: ExamDefinitionIn) -> ExamVariant:
    variant = _BUILDERS[ExamType(payload.type)](payload)
    repeated = _duplicates(variant.child_exam_ids)
    if repeated:
        raise InvalidCompositionError("An exam can include each child only once", offending_ids=repeated)
    return variant


@dataclass(frozen=True)
class CatalogNode:
    """What the composition checks need to know about an existing definition."""
    id: int
    is_profile: bool
    child_exam_ids: tuple[int, ...]
    exam_type: ExamType = ExamType.SIMPLE


def check_children(
    variant: ExamVariant,
    lookup: Callable[[int], CatalogNode | None],
    definition_id: int | None = None,
) -> None:
    """Every child must exist, must not be a profile and must not be the exam itself."""
    children = variant.child_exam_ids
    if definition_id is not None and definition_id in children:
        raise InvalidCompositionError("An exam cannot include itself", offending_ids=[definition_id])

    missing = [child_id for child_id in children if lookup(child_id) is None]
    if missing:
        raise InvalidCompositionError("Unknown child exams", offending_ids=missing)

    profiles = [child_id for child_id in children if lookup(child_id).is_profile]
    if profiles:
        raise InvalidCompositionError("A profile cannot be included in another exam", offending_ids=profiles)


def check_acyclic(
    definition_id: int,
    child_exam_ids: Iterable[int],
    lookup: Callable[[int], CatalogNode | None],
) -> None:
    """Reject the child list if any child reaches ``definition_id`` again."""
    for child_id in child_exam_ids:
        stack = [(child_id, child_id)]
        visited: set[int] = set()
        while stack:
            current, via = stack.pop()
            if current == definition_id:
                raise InvalidCompositionError(
                    f"Including exam {via} would create a cycle back to exam {definition_id}",
                    offending_ids=[via],
                )
            if current in visited:
                continue
            visited.add(current)
            node = lookup(current)
            if node is not None:
                stack.extend((grandchild, via) for grandchild in node.child_exam_ids)


def check_profile_flag(definition_id: int, is_profile: bool, parent_ids: list[int]) -> None:
    """A definition already used as a child cannot become a profile."""
    if is_profile and parent_ids:
        raise InvalidCompositionError(
            f"Exam {definition_id} is included in other exams and cannot become a profile",
            offending_ids=parent_ids,
        )


def check_nesting(
    variant: ExamVariant,
    lookup: Callable[[int], CatalogNode | None],
    parent_ids: list[int],
) -> None:
    """Keep exam trees at most two levels deep below the requested exam.

    A composite is never included in another exam, and an included exam may
    only have children that have none of their own.
    """
    children = [lookup(child_id) for child_id in variant.child_exam_ids]
    composites = [node.id for node in children if node.exam_type == ExamType.COMPOSITE]
    if composites:
        raise InvalidCompositionError("A composite exam cannot be included in another exam", offending_ids=composites)

    too_deep = [
        node.id
        for node in children
        if any(lookup(grandchild_id).child_exam_ids for grandchild_id in node.child_exam_ids)
    ]
    if too_deep:
        raise InvalidCompositionError("Exams can be nested at most two levels deep", offending_ids=too_deep)

    if parent_ids:
        if variant.type == ExamType.COMPOSITE:
            raise InvalidCompositionError(
                "This exam is included in other exams and cannot become a composite", offending_ids=parent_ids
            )
        nested = [node.id for node in children if node.child_exam_ids]
        if nested:
            raise InvalidCompositionError(
                "This exam is included in other exams, so its children cannot include exams", offending_ids=nested
            )
