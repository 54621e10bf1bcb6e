"""
Status conditions for Database resources.

Conditions are kept in an ordered map keyed by type: setting a condition
replaces the stored one of the same type in place, so at most one condition
per type ever exists. The transition time only moves when the condition's
status actually changes.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ConditionType(str, Enum):
    """Condition types reported on a Database resource."""

    CREATING = "Creating"
    CREATED = "Created"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    ERRORED = "Errored"


# Default reason and message per condition type
CONDITION_TEMPLATES: Dict[ConditionType, tuple] = {
    ConditionType.CREATING: ("CreatingDatabase", "Database is creating"),
    ConditionType.CREATED: ("CreatedDatabase", "Database successfully created"),
    ConditionType.SYNCING: ("SyncingDatabase", "Database is syncing"),
    ConditionType.SYNCED: ("SyncedDatabase", "Database is in sync"),
    ConditionType.ERRORED: ("ErroredDatabase", "Database is erroring"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


class Condition(BaseModel):
    """A single status condition (metav1.Condition shape)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=utcnow)
    observed_generation: Optional[int] = None

    def to_k8s(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        data["lastTransitionTime"] = self.last_transition_time.strftime("%Y-%m-%dT%H:%M:%SZ")
        return data


class ConditionSet:
    """Ordered map of conditions keyed by type."""

    def __init__(self, conditions: Optional[List[Condition]] = None):
        self._items: Dict[str, Condition] = {}
        for condition in conditions or []:
            # Last write wins if the stored list ever carried duplicates
            self._items[condition.type] = condition

    @classmethod
    def from_k8s(cls, raw: Optional[List[Dict[str, Any]]]) -> "ConditionSet":
        return cls([Condition.model_validate(item) for item in raw or []])

    def to_k8s(self) -> List[Dict[str, Any]]:
        return [condition.to_k8s() for condition in self._items.values()]

    def get(self, type_: "ConditionType | str") -> Optional[Condition]:
        return self._items.get(_type_name(type_))

    def is_true(self, type_: "ConditionType | str") -> bool:
        condition = self.get(type_)
        return condition is not None and condition.status == "True"

    def set(
        self,
        type_: "ConditionType | str",
        status: bool = True,
        reason: Optional[str] = None,
        message: Optional[str] = None,
        observed_generation: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Upsert a condition by type.

        Reason and message default to the type's template. Returns True when
        the condition's status changed (or it was newly added).
        """
        name = _type_name(type_)
        default_reason, default_message = CONDITION_TEMPLATES.get(
            ConditionType(name) if name in _KNOWN_TYPES else None, (name, "")
        )
        status_str = "True" if status else "False"
        existing = self._items.get(name)
        changed = existing is None or existing.status != status_str

        self._items[name] = Condition(
            type=name,
            status=status_str,
            reason=reason or default_reason,
            message=message if message is not None else default_message,
            last_transition_time=(now or utcnow()) if changed else existing.last_transition_time,
            observed_generation=observed_generation,
        )
        return changed

    def clear(self, type_: "ConditionType | str", observed_generation: Optional[int] = None) -> bool:
        """Flip an existing condition to False; absent conditions stay absent."""
        existing = self.get(type_)
        if existing is None or existing.status == "False":
            return False
        return self.set(
            type_,
            status=False,
            reason=existing.reason,
            message=existing.message,
            observed_generation=observed_generation,
        )

    def __iter__(self) -> Iterator[Condition]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, type_: object) -> bool:
        return isinstance(type_, (str, ConditionType)) and _type_name(type_) in self._items

    def types(self) -> List[str]:
        return list(self._items)


_KNOWN_TYPES = {t.value for t in ConditionType}


def _type_name(type_: "ConditionType | str") -> str:
    return type_.value if isinstance(type_, ConditionType) else str(type_)
