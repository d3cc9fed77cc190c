"""Task, resource and result records."""

from .resource import (
    Algo,
    AlgoUpdate,
    Data,
    DataUpdate,
    Model,
    ModelUpdate,
    Prediction,
    PredictionUpdate,
    Problem,
    ProblemUpdate,
    Resource,
    ResourceUpdate,
    RESOURCE_TYPES,
    RESOURCE_UPDATE_TYPES,
)
from .result import LearnResult, PredictResult
from .serialization import NIL_UUID, key_from_uuid, parse_uuid, uuid_from_key
from .task import LearnTask, PredictTask, TASK_TYPES, UpletTask

__all__ = [
    "Algo",
    "AlgoUpdate",
    "Data",
    "DataUpdate",
    "Model",
    "ModelUpdate",
    "Prediction",
    "PredictionUpdate",
    "Problem",
    "ProblemUpdate",
    "Resource",
    "ResourceUpdate",
    "RESOURCE_TYPES",
    "RESOURCE_UPDATE_TYPES",
    "LearnResult",
    "PredictResult",
    "NIL_UUID",
    "key_from_uuid",
    "parse_uuid",
    "uuid_from_key",
    "LearnTask",
    "PredictTask",
    "TASK_TYPES",
    "UpletTask",
]
