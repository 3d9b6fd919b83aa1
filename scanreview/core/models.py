from __future__ import annotations

from enum import IntEnum
from typing import Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

TREND_WINDOW_SIZE = 8


class SeverityLevel(IntEnum):
    INFORMATIONAL = 0
    VERY_LOW = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    VERY_HIGH = 5

    @property
    def display_name(self) -> str:
        return self.name.replace("_", " ").title()

    @classmethod
    def parse(cls, value) -> "SeverityLevel":
        """Convert a raw report value (int or numeric string) to a level.

        Raises ValueError when the value is not an integer in 0-5.
        """
        if isinstance(value, bool):
            raise ValueError(f"Invalid severity: {value!r}")
        try:
            level = value if isinstance(value, int) else int(str(value).strip())
            level = int(level)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid severity: {value!r}") from exc
        if level < 0 or level > 5:
            raise ValueError(f"Invalid severity. Severity must be between 0 and 5, got {level}")
        return cls(level)


SEVERITY_LEVELS = tuple(SeverityLevel)

ZERO_COUNTS = (0,) * len(SEVERITY_LEVELS)
NO_FLAGS = (False,) * len(SEVERITY_LEVELS)


def _check_per_severity(name: str, values: tuple) -> None:
    if len(values) != len(SEVERITY_LEVELS):
        raise ValueError(f"{name} must hold exactly {len(SEVERITY_LEVELS)} entries")


class FindingCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: SeverityLevel
    count: int = Field(ge=0)
    new_count: int = Field(ge=0)
    net_count: int
    mitigated: bool = False


def zero_counts() -> Tuple[FindingCounts, ...]:
    return tuple(FindingCounts(severity=s, count=0, new_count=0, net_count=0) for s in SEVERITY_LEVELS)


class TrendSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int
    # None marks a build that produced no count (e.g. composition analysis not subscribed)
    count: int | None = None


class TrendWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    samples: Tuple[TrendSample, ...] = ()

    @model_validator(mode="after")
    def _check_size(self) -> "TrendWindow":
        if len(self.samples) > TREND_WINDOW_SIZE:
            raise ValueError(f"Trend window holds at most {TREND_WINDOW_SIZE} samples")
        return self

    def append(self, sample: TrendSample) -> "TrendWindow":
        """Return a new window with ``sample`` added, evicting the oldest entries past the cap."""
        samples = list(self.samples)
        while len(samples) >= TREND_WINDOW_SIZE:
            samples.pop(0)
        samples.append(sample)
        return TrendWindow(samples=tuple(samples))

    def __len__(self) -> int:
        return len(self.samples)

    def has_counts(self) -> bool:
        return any(s.count is not None for s in self.samples)


class ScaComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    blacklisted: bool = False
    new: bool = False
    violates_policy: bool = False


class ScaFacts(BaseModel):
    """Software composition facts read straight from a detailed report."""

    model_config = ConfigDict(frozen=True)

    counts: Tuple[int, ...] = ZERO_COUNTS
    mitigated: Tuple[bool, ...] = NO_FLAGS
    max_cvss_score: float = -1.0
    blacklisted_count: int = -1
    components: Tuple[ScaComponent, ...] = ()

    @property
    def total_count(self) -> int:
        return sum(self.counts)


class RawFacts(BaseModel):
    """Primitive facts extracted from a detailed report, before history is applied."""

    model_config = ConfigDict(frozen=True)

    account_id: str = ""
    app_id: str = ""
    build_id: str = ""
    policy_name: str
    policy_compliance_status: str
    veracode_level: str
    score: int
    scan_overdue: bool = False
    counts: Tuple[int, ...] = ZERO_COUNTS
    mitigated: Tuple[bool, ...] = NO_FLAGS
    policy_affected: Tuple[bool, ...] = NO_FLAGS
    net_change: Tuple[int, ...] = ZERO_COUNTS
    sca: ScaFacts | None = None

    @model_validator(mode="after")
    def _check_arrays(self) -> "RawFacts":
        for name in ("counts", "mitigated", "policy_affected", "net_change"):
            _check_per_severity(name, getattr(self, name))
        return self

    @property
    def total_count(self) -> int:
        return sum(self.counts)


class ScaRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscribed: bool = False
    max_cvss_score: float = 0.0
    blacklisted_count: int = 0
    counts: Tuple[FindingCounts, ...] = ()
    components: Tuple[ScaComponent, ...] = ()
    trend: TrendWindow = TrendWindow()

    @model_validator(mode="after")
    def _check_counts(self) -> "ScaRecord":
        if self.subscribed:
            _check_per_severity("counts", self.counts)
        return self

    @property
    def total_count(self) -> int:
        return sum(c.count for c in self.counts)

    @property
    def total_new_count(self) -> int:
        return sum(c.new_count for c in self.counts)

    @property
    def total_net_count(self) -> int:
        return sum(c.net_count for c in self.counts)

    def count_for(self, severity) -> FindingCounts:
        if not self.subscribed:
            raise ValueError("Composition counts are not available without a subscription")
        return self.counts[SeverityLevel.parse(severity)]


class ScanRecord(BaseModel):
    """Immutable result of one review attached to a build.

    A record built with ``available=False`` (see :meth:`empty`) stands for
    "no data" and is still safe to render: every per-severity lookup answers
    with zeros.
    """

    model_config = ConfigDict(frozen=True)

    available: bool = True
    account_id: str = ""
    app_id: str = ""
    build_id: str = ""
    policy_name: str = ""
    policy_compliance_status: str = ""
    veracode_level: str = ""
    score: int = 0
    scan_overdue: bool = False
    total_count: int = 0
    counts: Tuple[FindingCounts, ...] = Field(default_factory=zero_counts)
    policy_affected: Tuple[bool, ...] = NO_FLAGS
    net_change: Tuple[int, ...] = ZERO_COUNTS
    trend: TrendWindow = TrendWindow()
    sca: ScaRecord | None = None

    @model_validator(mode="after")
    def _check_consistency(self) -> "ScanRecord":
        _check_per_severity("counts", self.counts)
        _check_per_severity("policy_affected", self.policy_affected)
        _check_per_severity("net_change", self.net_change)
        for level, fc in zip(SEVERITY_LEVELS, self.counts):
            if fc.severity != level:
                raise ValueError("counts must be ordered by severity level")
        if self.total_count != sum(fc.count for fc in self.counts):
            raise ValueError("total_count must equal the sum of per-severity counts")
        return self

    @classmethod
    def empty(cls) -> "ScanRecord":
        return cls(available=False)

    @property
    def is_empty(self) -> bool:
        return not self.available

    @property
    def has_sca(self) -> bool:
        return self.sca is not None

    @property
    def total_new_count(self) -> int:
        return sum(fc.new_count for fc in self.counts)

    @property
    def total_net_change(self) -> int:
        return sum(fc.net_count for fc in self.counts)

    def count_for(self, severity) -> FindingCounts:
        return self.counts[SeverityLevel.parse(severity)]

    def is_mitigated(self, severity) -> bool:
        return self.count_for(severity).mitigated

    def affects_policy(self, severity) -> bool:
        return self.policy_affected[SeverityLevel.parse(severity)]


class AnalysisInfo(BaseModel):
    analysis_id: str = ""
    name: str = ""
    occurrence_id: str | None = None
    status: str | None = None


class OccurrenceStatus(BaseModel):
    occurrence_id: str = ""
    status: str | None = None


class ScanOccurrence(BaseModel):
    linked_app_id: str | None = None
    linked_app_name: str | None = None
    linked_build_id: str | None = None
