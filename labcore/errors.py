"""
Domain error hierarchy.

Every failure raised by the catalog, capture and state services derives from
``LabCoreError`` so the API layer can turn it into the standard error envelope
without knowing the individual cases.
"""
from typing import Any


class LabCoreError(Exception):
    """Base exception for all lab core errors."""

    status_code: int = 400

    def __init__(self, message: str, code: str = "LAB_CORE_ERROR", details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(LabCoreError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            message=f"{entity} {entity_id} not found",
            code="NOT_FOUND",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class DuplicateCodeError(LabCoreError):
    status_code = 409

    def __init__(self, code: str):
        super().__init__(
            message=f"Exam code '{code}' is already in use",
            code="DUPLICATE_CODE",
            details={"code": code},
        )
        self.exam_code = code


class InvalidCompositionError(LabCoreError):
    """Definition violates the type / child composition rules."""

    status_code = 422

    def __init__(self, message: str, offending_ids: list[int] | None = None, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            code="INVALID_COMPOSITION",
            details={"offending_ids": list(offending_ids or []), **(details or {})},
        )
        self.offending_ids = list(offending_ids or [])


class TypeMismatchError(LabCoreError):
    status_code = 422

    def __init__(self, message: str, data_type: str, value: Any = None, field_id: int | None = None):
        super().__init__(
            message=message,
            code="TYPE_MISMATCH",
            details={"data_type": data_type, "value": value, "field_id": field_id},
        )
        self.data_type = data_type
        self.value = value
        self.field_id = field_id


class InvalidStateError(LabCoreError):
    """Mutation attempted on an instance whose state does not allow it."""

    status_code = 409

    def __init__(self, message: str, instance_id: int | None = None, state: str | None = None):
        super().__init__(
            message=message,
            code="INVALID_STATE",
            details={"instance_id": instance_id, "state": state},
        )
        self.instance_id = instance_id
        self.state = state


class InvalidTransitionError(LabCoreError):
    status_code = 409

    def __init__(self, instance_id: int, current: str, target: str):
        super().__init__(
            message=f"Exam instance {instance_id} cannot move from {current} to {target}",
            code="INVALID_TRANSITION",
            details={"instance_id": instance_id, "current": current, "target": target},
        )
        self.instance_id = instance_id
        self.current = current
        self.target = target


class IncompleteDataError(LabCoreError):
    """``complete`` called before required fields and child exams are satisfied."""

    status_code = 409

    def __init__(self, instance_id: int, missing_fields: list[str], incomplete_children: list[int]):
        parts = []
        if missing_fields:
            parts.append("missing required fields: " + ", ".join(missing_fields))
        if incomplete_children:
            parts.append("incomplete child exams: " + ", ".join(str(i) for i in incomplete_children))
        super().__init__(
            message=f"Exam instance {instance_id} is incomplete ({'; '.join(parts)})",
            code="INCOMPLETE_DATA",
            details={
                "instance_id": instance_id,
                "missing_fields": list(missing_fields),
                "incomplete_children": list(incomplete_children),
            },
        )
        self.instance_id = instance_id
        self.missing_fields = list(missing_fields)
        self.incomplete_children = list(incomplete_children)


class ConcurrencyConflictError(LabCoreError):
    status_code = 409

    def __init__(self, key: str, timeout: float):
        super().__init__(
            message=f"Timed out after {timeout}s waiting for {key}; retry the operation",
            code="CONCURRENCY_CONFLICT",
            details={"key": key, "timeout": timeout},
        )
        self.key = key
