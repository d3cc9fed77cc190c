"""Learn and predict uplet records."""

from __future__ import annotations

import dataclasses
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Mapping, Optional, Sequence, Tuple, Union

from upletworker.common import TaskStatus, TERMINAL_STATUSES, UpletType
from upletworker.utils.errors import ValidationError

from .serialization import (
    is_unset,
    parse_uuid,
    parse_uuid_list,
    uuid_from_key,
    uuid_to_str,
)

UUIDRef = Optional[uuid.UUID]


def coerce_status(value: Any) -> Optional[TaskStatus]:
    try:
        return TaskStatus(value)
    except ValueError:
        return None


def _check_status(value: Any) -> None:
    if coerce_status(value) is None:
        choices = ", ".join(s.value for s in TaskStatus)
        raise ValidationError(
            f"status field is not valid (provided: {getattr(value, 'value', value)}, possible choices: {choices})"
        )


def _check_refs(refs: Sequence[UUIDRef], field_name: str, empty_message: str) -> None:
    if not refs:
        raise ValidationError(empty_message)
    for pos, ref in enumerate(refs):
        if is_unset(ref):
            raise ValidationError(f"Nil UUID in {field_name} field at pos {pos}")


def _to_int(value: Any, field_name: str) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field_name} field must be an integer: {value!r}") from e


def _to_float(value: Any, field_name: str) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field_name} field must be a number: {value!r}") from e


def _to_perf_map(value: Any, field_name: str) -> Dict[str, float]:
    if not value:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{field_name} field must be a mapping of metric name to value")
    return {str(k): _to_float(v, field_name) for k, v in value.items()}


class _UpletRecord:
    """Behaviour shared by both uplet kinds; subclasses are frozen dataclasses."""

    uplet_type: ClassVar[UpletType]

    def check(self) -> None:
        raise NotImplementedError

    @property
    def status_enum(self) -> TaskStatus:
        status = coerce_status(self.status)
        if status is None:
            _check_status(self.status)
        return status

    def with_status(self, status: Union[TaskStatus, str], **changes: Any):
        """Return a copy in ``status``; terminal statuses stamp ``timestamp_done``."""
        status = TaskStatus(status)
        if status in TERMINAL_STATUSES and "timestamp_done" not in changes:
            changes["timestamp_done"] = int(time.time())
        return dataclasses.replace(self, status=status, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        if not isinstance(data, Mapping):
            raise ValidationError(f"{cls.uplet_type.value} record must be a JSON object")
        valid_fields = {f.name for f in dataclasses.fields(cls)}
        filtered_data = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**cls._parse_fields(filtered_data))

    @classmethod
    def _parse_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class LearnTask(_UpletRecord):
    """A learn uplet: train an algorithm on train data, score it on test data."""

    uplet_type: ClassVar[UpletType] = UpletType.LEARN

    id: UUIDRef = None
    problem: UUIDRef = None
    algo: UUIDRef = None
    train_data: Tuple[UUIDRef, ...] = ()
    test_data: Tuple[UUIDRef, ...] = ()
    model_start: UUIDRef = None
    model_end: UUIDRef = None
    rank: int = 0
    worker: UUIDRef = None
    status: Union[TaskStatus, str] = TaskStatus.TODO
    timestamp_request: int = 0
    timestamp_done: int = 0
    perf: float = 0.0
    train_perf: Mapping[str, float] = field(default_factory=dict)
    test_perf: Mapping[str, float] = field(default_factory=dict)

    def check(self) -> None:
        if is_unset(self.id):
            raise ValidationError("id field is required")
        if is_unset(self.problem):
            raise ValidationError("problem field is required")
        if is_unset(self.algo):
            raise ValidationError("algo field is required")
        _check_refs(self.train_data, "train_data", "train_data field is empty or unset")
        _check_refs(self.test_data, "test_data", "test_data field is empty or unset")
        _check_status(self.status)
        if self.rank < 0:
            raise ValidationError("rank field must be positive or zero")
        if self.rank > 0 and is_unset(self.model_start):
            raise ValidationError(
                f"rank {self.rank} and empty model_start: a continuation task requires a starting model"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": uuid_to_str(self.id),
            "problem": uuid_to_str(self.problem),
            "algo": uuid_to_str(self.algo),
            "train_data": [uuid_to_str(d) for d in self.train_data],
            "test_data": [uuid_to_str(d) for d in self.test_data],
            "model_start": uuid_to_str(self.model_start),
            "model_end": uuid_to_str(self.model_end),
            "rank": self.rank,
            "worker": uuid_to_str(self.worker),
            "status": getattr(self.status, "value", self.status),
            "timestamp_request": self.timestamp_request,
            "timestamp_done": self.timestamp_done,
            "perf": self.perf,
            "train_perf": dict(self.train_perf),
            "test_perf": dict(self.test_perf),
        }

    @classmethod
    def _parse_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        parsed = dict(data)
        for name in ("id", "problem", "algo", "model_start", "model_end", "worker"):
            if name in parsed:
                parsed[name] = parse_uuid(parsed[name], name)
        for name in ("train_data", "test_data"):
            if name in parsed:
                parsed[name] = tuple(parse_uuid_list(parsed[name], name))
        for name in ("rank", "timestamp_request", "timestamp_done"):
            if name in parsed:
                parsed[name] = _to_int(parsed[name], name)
        if "perf" in parsed:
            parsed["perf"] = _to_float(parsed["perf"], "perf")
        for name in ("train_perf", "test_perf"):
            if name in parsed:
                parsed[name] = _to_perf_map(parsed[name], name)
        return parsed

    @classmethod
    def from_ledger_record(cls, record: Mapping[str, Any]) -> "LearnTask":
        """Build a task from the ledger's record layout (keys like ``algo_<uuid>``)."""
        try:
            return cls(
                id=uuid_from_key(record["key"]),
                problem=parse_uuid(record.get("problem_storage_address"), "problem"),
                algo=uuid_from_key(record["algo"]),
                model_start=parse_uuid(record.get("model_start"), "model_start"),
                model_end=parse_uuid(record.get("model_end"), "model_end"),
                train_data=tuple(uuid_from_key(k) for k in record.get("train_data") or ()),
                test_data=tuple(uuid_from_key(k) for k in record.get("test_data") or ()),
                worker=parse_uuid(record.get("worker"), "worker"),
                status=record.get("status", TaskStatus.TODO),
                rank=_to_int(record.get("rank"), "rank"),
                perf=_to_float(record.get("perf"), "perf"),
                train_perf=_to_perf_map(record.get("train_perf"), "train_perf"),
                test_perf=_to_perf_map(record.get("test_perf"), "test_perf"),
                timestamp_request=int(time.time()),
            )
        except KeyError as e:
            raise ValidationError(f"ledger record is missing {e.args[0]}") from e


@dataclass(frozen=True)
class PredictTask(_UpletRecord):
    """A predict uplet: run a trained model over one or more datasets."""

    uplet_type: ClassVar[UpletType] = UpletType.PREDICT

    id: UUIDRef = None
    problem: UUIDRef = None
    algo: UUIDRef = None
    model: UUIDRef = None
    data: Tuple[UUIDRef, ...] = ()
    worker: UUIDRef = None
    status: Union[TaskStatus, str] = TaskStatus.TODO
    timestamp_request: int = 0
    timestamp_done: int = 0
    prediction_storage_uuid: UUIDRef = None

    def check(self) -> None:
        if is_unset(self.id):
            raise ValidationError("id field is unset")
        if is_unset(self.problem):
            raise ValidationError("problem field is unset")
        if is_unset(self.algo):
            raise ValidationError("algo field is required")
        if is_unset(self.model):
            raise ValidationError("model field is required")
        _check_refs(self.data, "data", "data field is empty or unset")
        _check_status(self.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": uuid_to_str(self.id),
            "problem": uuid_to_str(self.problem),
            "algo": uuid_to_str(self.algo),
            "model": uuid_to_str(self.model),
            "data": [uuid_to_str(d) for d in self.data],
            "worker": uuid_to_str(self.worker),
            "status": getattr(self.status, "value", self.status),
            "timestamp_request": self.timestamp_request,
            "timestamp_done": self.timestamp_done,
            "prediction_storage_uuid": uuid_to_str(self.prediction_storage_uuid),
        }

    @classmethod
    def _parse_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        parsed = dict(data)
        for name in ("id", "problem", "algo", "model", "worker", "prediction_storage_uuid"):
            if name in parsed:
                parsed[name] = parse_uuid(parsed[name], name)
        if "data" in parsed:
            parsed["data"] = tuple(parse_uuid_list(parsed["data"], "data"))
        for name in ("timestamp_request", "timestamp_done"):
            if name in parsed:
                parsed[name] = _to_int(parsed[name], name)
        return parsed

    @classmethod
    def from_ledger_record(cls, record: Mapping[str, Any]) -> "PredictTask":
        try:
            return cls(
                id=uuid_from_key(record["key"]),
                problem=parse_uuid(record.get("problem_storage_address"), "problem"),
                algo=uuid_from_key(record["algo"]),
                model=parse_uuid(record.get("model"), "model"),
                data=tuple(uuid_from_key(k) for k in record.get("data") or ()),
                worker=parse_uuid(record.get("worker"), "worker"),
                status=record.get("status", TaskStatus.TODO),
                timestamp_request=int(time.time()),
            )
        except KeyError as e:
            raise ValidationError(f"ledger record is missing {e.args[0]}") from e


UpletTask = Union[LearnTask, PredictTask]

TASK_TYPES = {
    UpletType.LEARN: LearnTask,
    UpletType.PREDICT: PredictTask,
}
