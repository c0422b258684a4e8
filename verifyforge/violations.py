"""
Violation Sets
==============

Output of one verify pass: an ordered sequence of (category, identifier)
findings. Two sets are equal when their multisets of (category, identifier)
pairs match; order and messages are ignored.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

TOOLING_FAILURE = "tooling_failure"
ARCHITECTURE_BOUNDARY = "architecture_boundary"


@dataclass(frozen=True)
class Violation:
    """A single finding."""
    category: str
    identifier: str
    message: str = field(default="", compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.category, self.identifier)

    def to_dict(self) -> dict:
        data = {"category": self.category, "identifier": self.identifier}
        if self.message:
            data["message"] = self.message
        return data


class ViolationSet:
    """Ordered findings from one verify pass."""

    __slots__ = ("_items", "_counts")

    def __init__(self, violations: Iterable[Violation] = ()):
        self._items: tuple[Violation, ...] = tuple(violations)
        self._counts = Counter(v.key for v in self._items)

    @classmethod
    def of(cls, *pairs: tuple[str, str]) -> "ViolationSet":
        """Build from (category, identifier) pairs."""
        return cls(Violation(category, identifier) for category, identifier in pairs)

    @classmethod
    def from_dicts(cls, items: Iterable[dict]) -> "ViolationSet":
        return cls(
            Violation(item["category"], item["identifier"], item.get("message", ""))
            for item in items
        )

    @classmethod
    def tooling_failure(cls, error: BaseException, source: Optional[str] = None) -> "ViolationSet":
        """
        Represent a verify collaborator crash as a finding.

        The identifier is derived from the exception type and message so
        repeated identical crashes compare equal.
        """
        identifier = f"{type(error).__name__}: {error}"
        if source:
            identifier = f"{source}: {identifier}"
        return cls([Violation(TOOLING_FAILURE, identifier, message=repr(error))])

    @classmethod
    def merge(cls, sets: Iterable["ViolationSet"]) -> "ViolationSet":
        """Concatenate worker results into one set, keeping worker order."""
        items: list[Violation] = []
        for vs in sets:
            items.extend(vs)
        return cls(items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    def categories(self) -> set[str]:
        return {v.category for v in self._items}

    def by_category(self, category: str) -> list[Violation]:
        return [v for v in self._items if v.category == category]

    def has_tooling_failure(self) -> bool:
        return any(v.category == TOOLING_FAILURE for v in self._items)

    def to_list(self) -> list[dict]:
        return [v.to_dict() for v in self._items]

    def __iter__(self) -> Iterator[Violation]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ViolationSet):
            return NotImplemented
        return self._counts == other._counts

    def __hash__(self) -> int:
        return hash(frozenset(self._counts.items()))

    def __repr__(self) -> str:
        pairs = ", ".join(f"{v.category}:{v.identifier}" for v in self._items)
        return f"ViolationSet([{pairs}])"
