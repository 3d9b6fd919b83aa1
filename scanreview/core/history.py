from __future__ import annotations

import logging
from typing import Dict, Hashable, List, NamedTuple, Optional, Protocol, Sequence, Tuple

from scanreview.core.models import (
    SEVERITY_LEVELS,
    FindingCounts,
    RawFacts,
    ScaFacts,
    ScaRecord,
    ScanRecord,
    TrendSample,
    TrendWindow,
)
from scanreview.core.utils import ReviewError, now_millis

LOGGER = logging.getLogger(__name__)

# Upper bound on how far back the ancestor search walks on long-lived jobs.
MAX_BUILDS_TO_SEARCH = 60


class BuildHistoryProvider(Protocol):
    def get_previous_build(self, build_ref: Hashable) -> Optional[Hashable]:
        ...

    def get_scan_record(self, build_ref: Hashable) -> Optional[ScanRecord]:
        ...


class Reconciliation(NamedTuple):
    counts: Tuple[FindingCounts, ...]
    trend: TrendWindow
    sca: ScaRecord | None
    ancestor: ScanRecord | None


def find_ancestor_record(
    provider: BuildHistoryProvider,
    build_ref: Hashable,
    max_builds: int = MAX_BUILDS_TO_SEARCH,
) -> ScanRecord | None:
    """Walk back from the build before ``build_ref`` to the first one with review data."""
    previous = provider.get_previous_build(build_ref)
    searched = 0
    while previous is not None and searched < max_builds:
        record = provider.get_scan_record(previous)
        if record is not None and record.available:
            LOGGER.debug("Found previous review data in build %s", previous)
            return record
        previous = provider.get_previous_build(previous)
        searched += 1
    return None


def reconcile_counts(
    counts: Sequence[int],
    mitigated: Sequence[bool],
    previous: Sequence[int] | None,
) -> Tuple[FindingCounts, ...]:
    """Build per-severity counts with net/new deltas.

    Without previous counts this is an initial scan: net and new both equal
    the current count.
    """
    result = []
    for sev in SEVERITY_LEVELS:
        count = counts[sev]
        net = count - previous[sev] if previous is not None else count
        result.append(
            FindingCounts(
                severity=sev,
                count=count,
                new_count=max(net, 0),
                net_count=net,
                mitigated=mitigated[sev],
            )
        )
    return tuple(result)


def _reconcile_sca(
    sca: ScaFacts | None,
    ancestor: ScanRecord | None,
    timestamp: int,
) -> ScaRecord | None:
    previous_sca = ancestor.sca if ancestor is not None else None
    previous_trend = previous_sca.trend if previous_sca is not None else TrendWindow()

    if sca is None:
        # Keep the composition series moving so earlier counts stay charted.
        if not previous_trend.has_counts():
            return None
        return ScaRecord(
            subscribed=False,
            trend=previous_trend.append(TrendSample(timestamp=timestamp, count=None)),
        )

    previous_counts = None
    if previous_sca is not None and previous_sca.subscribed:
        previous_counts = [fc.count for fc in previous_sca.counts]

    return ScaRecord(
        subscribed=True,
        max_cvss_score=sca.max_cvss_score,
        blacklisted_count=sca.blacklisted_count,
        counts=reconcile_counts(sca.counts, sca.mitigated, previous_counts),
        components=sca.components,
        trend=previous_trend.append(TrendSample(timestamp=timestamp, count=sca.total_count)),
    )


def reconcile(
    facts: RawFacts,
    provider: BuildHistoryProvider,
    build_ref: Hashable,
    timestamp: int | None = None,
) -> Reconciliation:
    if timestamp is None:
        timestamp = now_millis()

    ancestor = find_ancestor_record(provider, build_ref)
    if ancestor is None:
        LOGGER.info("No previous review data found, treating this as the initial scan.")
        previous_counts = None
        previous_trend = TrendWindow()
    else:
        previous_counts = [fc.count for fc in ancestor.counts]
        previous_trend = ancestor.trend

    counts = reconcile_counts(facts.counts, facts.mitigated, previous_counts)
    trend = previous_trend.append(TrendSample(timestamp=timestamp, count=facts.total_count))
    sca = _reconcile_sca(facts.sca, ancestor, timestamp)
    return Reconciliation(counts=counts, trend=trend, sca=sca, ancestor=ancestor)


def build_record(
    facts: RawFacts,
    provider: BuildHistoryProvider,
    build_ref: Hashable,
    app_id: str | None = None,
    build_id: str | None = None,
    timestamp: int | None = None,
) -> ScanRecord:
    """Assemble the record for ``build_ref`` from report facts and build history.

    ``app_id`` and ``build_id`` override the report's own values, as the linked
    application data is authoritative for dynamic analyses.
    """
    result = reconcile(facts, provider, build_ref, timestamp=timestamp)
    return ScanRecord(
        account_id=facts.account_id,
        app_id=app_id or facts.app_id,
        build_id=build_id or facts.build_id,
        policy_name=facts.policy_name,
        policy_compliance_status=facts.policy_compliance_status,
        veracode_level=facts.veracode_level,
        score=facts.score,
        scan_overdue=facts.scan_overdue,
        total_count=facts.total_count,
        counts=result.counts,
        policy_affected=facts.policy_affected,
        net_change=facts.net_change,
        trend=result.trend,
        sca=result.sca,
    )


class InMemoryBuildHistory:
    """Build chain kept in insertion order; each build's record is written once."""

    def __init__(self) -> None:
        self._builds: List[Hashable] = []
        self._records: Dict[Hashable, ScanRecord] = {}

    def add_build(self, build_ref: Hashable, record: ScanRecord | None = None) -> None:
        if build_ref in self._builds:
            raise ValueError(f"Build {build_ref} already exists")
        self._builds.append(build_ref)
        if record is not None:
            self.attach_record(build_ref, record)

    def attach_record(self, build_ref: Hashable, record: ScanRecord) -> None:
        if build_ref not in self._builds:
            raise KeyError(build_ref)
        if build_ref in self._records:
            raise ReviewError(f"Build {build_ref} already has a review record")
        self._records[build_ref] = record

    def get_previous_build(self, build_ref: Hashable) -> Optional[Hashable]:
        index = self._builds.index(build_ref)
        return self._builds[index - 1] if index > 0 else None

    def get_scan_record(self, build_ref: Hashable) -> Optional[ScanRecord]:
        return self._records.get(build_ref)
