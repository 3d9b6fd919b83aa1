"""Text summary and trend datasets for a build's scan record."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List

from scanreview.core.models import SEVERITY_LEVELS, ScanRecord, TrendWindow

FLAW_SERIES_LABEL = "Dynamic Analysis"
SCA_SERIES_LABEL = "Software Composition Analysis"


def format_trend_date(timestamp: int, tz: tzinfo | None = timezone.utc) -> str:
    """Render an epoch-millisecond timestamp as e.g. ``Mar/7 09:05``."""
    dt = datetime.fromtimestamp(timestamp / 1000, tz=tz)
    return f"{dt.strftime('%b')}/{dt.day} {dt.hour:02d}:{dt.minute:02d}"


def _series(label: str, window: TrendWindow, tz: tzinfo | None) -> Dict[str, Any]:
    points = [
        {"date": format_trend_date(s.timestamp, tz), "count": s.count}
        for s in window.samples
        if s.count is not None
    ]
    return {"label": label, "points": points}


def trend_series(record: ScanRecord, tz: tzinfo | None = timezone.utc) -> List[Dict[str, Any]]:
    series = []
    if len(record.trend):
        series.append(_series(FLAW_SERIES_LABEL, record.trend, tz))
    if record.sca is not None and record.sca.trend.has_counts():
        series.append(_series(SCA_SERIES_LABEL, record.sca.trend, tz))
    return series


def _table(headers: List[str], rows: List[List[Any]]) -> List[str]:
    col_widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            col_widths[i] = max(col_widths[i], len(str(cell)))

    def fmt_row(values):
        return " | ".join(str(v).ljust(col_widths[i]) for i, v in enumerate(values))

    lines = [fmt_row(headers), "-+-".join("-" * w for w in col_widths)]
    lines.extend(fmt_row(row) for row in rows)
    return lines


def _signed(value: int) -> str:
    return f"{value:+d}" if value else "0"


def format_table(record: ScanRecord) -> str:
    if record.is_empty:
        return "No review data available for this build."

    lines = [
        f"Policy: {record.policy_name} ({record.policy_compliance_status})",
        f"Application: {record.app_id}  Build: {record.build_id}  Level: {record.veracode_level}",
        f"Score: {record.score}  Scan overdue: {'yes' if record.scan_overdue else 'no'}",
        "",
    ]
    headers = ["Severity", "Count", "New", "Net", "Mitigated", "Policy"]
    rows = []
    for sev in reversed(SEVERITY_LEVELS):
        fc = record.count_for(sev)
        rows.append([
            sev.display_name,
            fc.count,
            fc.new_count,
            _signed(fc.net_count),
            "yes" if fc.mitigated else "",
            "affects" if record.affects_policy(sev) else "",
        ])
    rows.append(["Total", record.total_count, record.total_new_count, _signed(record.total_net_change), "", ""])
    lines.extend(_table(headers, rows))

    sca = record.sca
    if sca is not None:
        lines.append("")
        if not sca.subscribed:
            lines.append("Software composition analysis: not subscribed")
        else:
            lines.append(
                f"Software composition analysis: {sca.total_count} vulnerabilities, "
                f"max CVSS {sca.max_cvss_score}, {sca.blacklisted_count} blacklisted components"
            )
            comp_rows = [
                [c.name, "yes" if c.blacklisted else "", "yes" if c.new else "", "yes" if c.violates_policy else ""]
                for c in sca.components
            ]
            if comp_rows:
                lines.extend(_table(["Component", "Blacklisted", "New", "Violates policy"], comp_rows))
    return "\n".join(lines)


def print_summary(record: ScanRecord) -> None:
    print(format_table(record))
