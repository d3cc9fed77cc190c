"""Resource records (algo, data, model, prediction, problem) and their typed updates."""

from __future__ import annotations

import dataclasses
import time
import uuid
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional, Type

from upletworker.common import ResourceKind
from upletworker.utils.errors import ValidationError

from .serialization import is_unset, parse_uuid, uuid_to_str


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class Resource:
    """Fields every stored resource carries."""

    kind: ClassVar[ResourceKind]
    text_fields: ClassVar[tuple] = ()

    id: Optional[uuid.UUID] = None
    timestamp_upload: int = 0
    owner: Optional[uuid.UUID] = None

    def check(self) -> None:
        if is_unset(self.id):
            raise ValidationError("'uuid' unset")
        if is_unset(self.owner):
            raise ValidationError("'owner' unset")
        for name in self.text_fields:
            if not getattr(self, name):
                raise ValidationError(f"'{name}' unset")
        if self.timestamp_upload <= 0:
            raise ValidationError("'timestamp_upload' unset")

    @classmethod
    def new(cls, id: Optional[uuid.UUID] = None, **fields: Any):
        """Create a resource with a fresh identity and upload timestamp."""
        return cls(id=id or uuid.uuid4(), timestamp_upload=_now(), **fields)

    def apply(self, update: "ResourceUpdate"):
        """Return a copy with the update's set fields applied and a fresh timestamp."""
        if update.kind != self.kind:
            raise ValidationError(f"{update.kind.value} update cannot be applied to {self.kind.value}")
        changes = {k: v for k, v in dataclasses.asdict(update).items() if v is not None}
        return dataclasses.replace(self, timestamp_upload=_now(), **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            data[f.name] = uuid_to_str(value) if isinstance(value, uuid.UUID) or value is None else value
        return data

    def form_fields(self) -> Dict[str, str]:
        """Metadata fields posted alongside the blob to the storage service."""
        fields = {"uuid": uuid_to_str(self.id)}
        for name in self.text_fields:
            fields[name] = str(getattr(self, name))
        return fields

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        valid_fields = {f.name for f in dataclasses.fields(cls)}
        parsed: Dict[str, Any] = {}
        for key, value in data.items():
            if key == "uuid":
                key = "id"
            if key not in valid_fields:
                continue
            if key in cls.text_fields:
                parsed[key] = str(value)
            elif key == "timestamp_upload":
                try:
                    parsed[key] = int(value)
                except (TypeError, ValueError) as e:
                    raise ValidationError(f"timestamp_upload must be an integer: {value!r}") from e
            else:
                parsed[key] = parse_uuid(value, key)
        return cls(**parsed)


@dataclass(frozen=True)
class Algo(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.ALGO
    text_fields: ClassVar[tuple] = ("name",)

    name: str = ""


@dataclass(frozen=True)
class Data(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.DATA


@dataclass(frozen=True)
class Model(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.MODEL

    algo: Optional[uuid.UUID] = None

    def check(self) -> None:
        super().check()
        if is_unset(self.algo):
            raise ValidationError("'algo' unset")

    def form_fields(self) -> Dict[str, str]:
        fields = super().form_fields()
        fields["algo"] = uuid_to_str(self.algo)
        return fields


@dataclass(frozen=True)
class Prediction(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.PREDICTION


@dataclass(frozen=True)
class Problem(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.PROBLEM
    text_fields: ClassVar[tuple] = ("name", "description")

    name: str = ""
    description: str = ""


@dataclass(frozen=True)
class ResourceUpdate:
    """Explicit field updates for a resource; ``None`` leaves a field untouched."""

    kind: ClassVar[ResourceKind]
    text_fields: ClassVar[tuple] = ()

    id: Optional[uuid.UUID] = None
    owner: Optional[uuid.UUID] = None

    @classmethod
    def from_form(cls, fields: Mapping[str, str]):
        valid_fields = {f.name for f in dataclasses.fields(cls)}
        parsed: Dict[str, Any] = {}
        for key, value in fields.items():
            name = "id" if key == "uuid" else key
            if name not in valid_fields:
                raise ValidationError(f"{key} is not a valid field for {cls.kind.value}")
            parsed[name] = value if name in cls.text_fields else parse_uuid(value, name)
        return cls(**parsed)


@dataclass(frozen=True)
class AlgoUpdate(ResourceUpdate):
    kind: ClassVar[ResourceKind] = ResourceKind.ALGO
    text_fields: ClassVar[tuple] = ("name",)

    name: Optional[str] = None


@dataclass(frozen=True)
class DataUpdate(ResourceUpdate):
    kind: ClassVar[ResourceKind] = ResourceKind.DATA


@dataclass(frozen=True)
class ModelUpdate(ResourceUpdate):
    kind: ClassVar[ResourceKind] = ResourceKind.MODEL

    algo: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class PredictionUpdate(ResourceUpdate):
    kind: ClassVar[ResourceKind] = ResourceKind.PREDICTION


@dataclass(frozen=True)
class ProblemUpdate(ResourceUpdate):
    kind: ClassVar[ResourceKind] = ResourceKind.PROBLEM
    text_fields: ClassVar[tuple] = ("name", "description")

    name: Optional[str] = None
    description: Optional[str] = None


RESOURCE_TYPES: Dict[ResourceKind, Type[Resource]] = {
    cls.kind: cls for cls in (Algo, Data, Model, Prediction, Problem)
}

RESOURCE_UPDATE_TYPES: Dict[ResourceKind, Type[ResourceUpdate]] = {
    cls.kind: cls for cls in (AlgoUpdate, DataUpdate, ModelUpdate, PredictionUpdate, ProblemUpdate)
}
