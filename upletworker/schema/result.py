"""Result payloads a worker reports to the ledger."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from upletworker.common import TaskStatus

from .serialization import uuid_to_str


@dataclass(frozen=True)
class LearnResult:
    """Performance of a finished learn uplet."""

    perf: float
    train_perf: Mapping[str, float] = field(default_factory=dict)
    test_perf: Mapping[str, float] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.DONE

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": TaskStatus(self.status).value,
            "perf": float(self.perf),
            "train_perf": {k: float(v) for k, v in self.train_perf.items()},
            "test_perf": {k: float(v) for k, v in self.test_perf.items()},
        }


@dataclass(frozen=True)
class PredictResult:
    prediction_storage_uuid: Optional[uuid.UUID]
    status: TaskStatus = TaskStatus.DONE

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": TaskStatus(self.status).value,
            "prediction_storage_uuid": uuid_to_str(self.prediction_storage_uuid),
        }
