"""Data structures for label sets, samples and series."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
import re

METRIC_NAME = "__name__"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


@dataclass(frozen=True, order=True)
class Labels:
    """Immutable, sorted set of label name/value pairs identifying a series.

    Build instances with ``from_dict`` or ``from_pairs`` so that pairs are
    sorted and empty values dropped; two label sets with the same pairs are
    equal and hash the same regardless of input order.
    """
    items: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, str]]) -> "Labels":
        seen: Dict[str, str] = {}
        for name, value in pairs:
            if name in seen:
                raise ValueError(f"Duplicate label name: {name}")
            seen[name] = value
        return cls(tuple(sorted((k, v) for k, v in seen.items() if v != "")))

    @classmethod
    def from_dict(cls, mapping: Mapping[str, str]) -> "Labels":
        return cls.from_pairs(mapping.items())

    @property
    def name(self) -> Optional[str]:
        """Metric name carried by the reserved label, if any."""
        return self.get(METRIC_NAME) or None

    def get(self, name: str, default: str = "") -> str:
        for k, v in self.items:
            if k == name:
                return v
        return default

    def has(self, name: str) -> bool:
        return any(k == name for k, _ in self.items)

    def without(self, *names: str) -> "Labels":
        return Labels(tuple((k, v) for k, v in self.items if k not in names))

    def keep(self, names: Iterable[str]) -> "Labels":
        wanted = set(names)
        return Labels(tuple((k, v) for k, v in self.items if k in wanted))

    def to_dict(self) -> Dict[str, str]:
        return dict(self.items)

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __str__(self) -> str:
        name = self.name or ""
        rest = ",".join(
            f'{k}="{_escape(v)}"' for k, v in self.items if k != METRIC_NAME
        )
        if not rest:
            return name or "{}"
        return f"{name}{{{rest}}}"


@dataclass(frozen=True)
class Sample:
    """A single observed value for a label set."""
    labels: Labels
    timestamp_ms: int
    value: float


@dataclass(frozen=True)
class Point:
    """A (timestamp, value) pair inside a series or query result."""
    t: int
    v: float


@dataclass
class Series:
    """Time-ordered points sharing one label set."""
    labels: Labels
    points: List[Point] = field(default_factory=list)


class MatchType(str, Enum):
    """Label matcher operators."""
    EQUAL = "="
    NOT_EQUAL = "!="
    REGEX = "=~"
    NOT_REGEX = "!~"


@dataclass(frozen=True)
class Matcher:
    """Matches one label of a label set; a missing label matches as ""."""
    type: MatchType
    name: str
    value: str
    _regex: Optional[re.Pattern] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.type in (MatchType.REGEX, MatchType.NOT_REGEX):
            # Anchored like the query language requires
            object.__setattr__(self, "_regex", re.compile(f"^(?:{self.value})$"))

    def matches(self, value: str) -> bool:
        if self.type == MatchType.EQUAL:
            return value == self.value
        if self.type == MatchType.NOT_EQUAL:
            return value != self.value
        if self.type == MatchType.REGEX:
            return self._regex.match(value) is not None
        return self._regex.match(value) is None

    def matches_labels(self, labels: Labels) -> bool:
        return self.matches(labels.get(self.name))

    def __str__(self) -> str:
        return f'{self.name}{self.type.value}"{_escape(self.value)}"'
