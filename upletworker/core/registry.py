"""Name-keyed registry used to look up pluggable backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable


@dataclass
class Registry:
    kind: str = "backend"
    _items: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def _normalize(name: str) -> str:
        return (name or "").strip().lower()

    def register(self, name: str, obj: Any) -> None:
        key = self._normalize(name)
        if key in self._items:
            raise KeyError(f"{self.kind} registry already contains '{key}'")
        self._items[key] = obj

    def get(self, name: str) -> Any:
        key = self._normalize(name)
        if key not in self._items:
            known = ", ".join(sorted(self._items)) or "none"
            raise KeyError(f"unknown {self.kind} '{key}' (known: {known})")
        return self._items[key]

    def create(self, name: str, **kwargs: Any) -> Any:
        return self.get(name)(**kwargs)

    def list(self) -> Iterable[str]:
        return tuple(self._items.keys())

    def items(self) -> Dict[str, Any]:
        return dict(self._items)
