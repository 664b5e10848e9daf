from labcore.models.exam import DataType, ExamChildLink, ExamDefinitionRecord, ExamType, FieldSchemaRecord
from labcore.models.request import ExamInstanceRecord, InstanceState, LabRequestRecord, ResultCaptureRecord

__all__ = [
    "DataType",
    "ExamType",
    "InstanceState",
    "ExamDefinitionRecord",
    "FieldSchemaRecord",
    "ExamChildLink",
    "LabRequestRecord",
    "ExamInstanceRecord",
    "ResultCaptureRecord",
]
