from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional


class CatalogError(ValueError):
    """Raised when a state catalog definition is malformed."""


class UnknownStateKeyError(KeyError):
    """A state entry references a key that is not in the catalog."""

    def __init__(self, key: str):
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"Unknown state key: {self.key!r}"


@dataclass(frozen=True)
class StateTypeDef:
    key: str
    label: str
    color: str
    severity: int
    display_order: int
    capacity_impact: int
    is_breakdown: bool = False

    @property
    def is_draining(self) -> bool:
        return self.capacity_impact < 0

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "label": self.label,
            "color": self.color,
            "severity": self.severity,
            "display_order": self.display_order,
            "capacity_impact": self.capacity_impact,
            "is_breakdown": self.is_breakdown,
        }


# Positive impact fills capacity, negative drains it.
DEFAULT_STATE_TYPES = (
    StateTypeDef("im_loch", "Im Loch", "#7c2d12", 10, 1, 40, True),
    StateTypeDef("halb_im_loch", "Halb im Loch", "#b91c1c", 8, 2, 25, True),
    StateTypeDef("sehr_stressiger_tag", "Sehr stressiger Tag", "#dc2626", 7, 3, -30),
    StateTypeDef("stressiger_tag", "Stressiger Tag", "#f97316", 6, 4, -20),
    StateTypeDef("normaler_tag", "Normaler Tag", "#fbbf24", 5, 5, -10),
    StateTypeDef("entspannter_tag", "Entspannter Tag", "#4ade80", 3, 6, 0),
    StateTypeDef("halb_ruhetag", "Halb Ruhetag", "#22c55e", 2, 7, 15),
    StateTypeDef("ruhetag", "Ruhetag", "#059669", 1, 8, 30),
)


class StateCatalog:
    """Immutable registry of state types keyed by ``key``."""

    def __init__(self, state_types: Iterable[StateTypeDef]):
        by_key: Dict[str, StateTypeDef] = {}
        for state_type in state_types:
            if state_type.key in by_key:
                raise CatalogError(f"Duplicate state key: {state_type.key}")
            by_key[state_type.key] = state_type
        self._by_key = by_key
        self._ordered = tuple(sorted(by_key.values(), key=lambda item: item.display_order))

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)

    def get(self, key: str) -> Optional[StateTypeDef]:
        return self._by_key.get(key)

    def lookup(self, key: str) -> StateTypeDef:
        state_type = self._by_key.get(key)
        if state_type is None:
            raise UnknownStateKeyError(key)
        return state_type

    def list_ordered(self) -> List[StateTypeDef]:
        return list(self._ordered)

    def breakdown_keys(self) -> List[str]:
        return [item.key for item in self._ordered if item.is_breakdown]

    @classmethod
    def from_json(cls, path: str | Path) -> "StateCatalog":
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CatalogError(f"Catalog file {path} is not valid JSON") from exc
        if not isinstance(raw, list):
            raise CatalogError("Catalog file must contain a list of state types")
        return cls(parse_state_type(item) for item in raw)


def parse_state_type(item: dict) -> StateTypeDef:
    try:
        return StateTypeDef(
            key=str(item["key"]),
            label=str(item.get("label") or item["key"]),
            color=str(item.get("color", "#6b7280")),
            severity=int(item.get("severity", 0)),
            display_order=int(item.get("display_order", item.get("order", 0))),
            capacity_impact=int(item.get("capacity_impact", 0)),
            is_breakdown=bool(item.get("is_breakdown", False)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise CatalogError(f"Invalid state type definition: {item!r}") from exc


def default_catalog() -> StateCatalog:
    return StateCatalog(DEFAULT_STATE_TYPES)


def load_catalog(path: Optional[str] = None) -> StateCatalog:
    if not path:
        return default_catalog()
    return StateCatalog.from_json(path)
