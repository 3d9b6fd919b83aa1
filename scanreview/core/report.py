"""Parsing of detailed report and build info XML documents.

Element lookups use the ``{*}`` wildcard so that documents are read the same
way with or without the report schema's default namespace.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, List

from scanreview.core.models import SEVERITY_LEVELS, RawFacts, ScaComponent, ScaFacts, SeverityLevel
from scanreview.core.utils import MalformedReportError, is_blank

LOGGER = logging.getLogger(__name__)

FLAW_ELEMENTS = {
    "static": "staticflaws",
    "dynamic": "dynamicflaws",
}

MITIGATION_ACCEPTED = "accepted"
REMEDIATION_FIXED = "Fixed"

_UNSAFE_XML_PATTERN = re.compile(r"<!DOCTYPE|<!ENTITY", re.IGNORECASE)
_ERROR_PATTERN = re.compile(r"<error>(.*?)</error>", re.DOTALL)


def load_document(document: str | bytes) -> ET.Element:
    """Parse an XML document, refusing empty input and DTD/entity declarations."""
    if document is None:
        raise MalformedReportError("Cannot process empty document.")
    if isinstance(document, bytes):
        try:
            document = document.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedReportError("Document is not valid UTF-8.") from exc
    if not document.strip():
        raise MalformedReportError("Cannot process empty document.")
    if _UNSAFE_XML_PATTERN.search(document):
        raise MalformedReportError("Document contains forbidden declarations.")
    try:
        return ET.fromstring(document)
    except ET.ParseError as exc:
        raise MalformedReportError(f"Malformed XML document: {exc}") from exc


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _as_bool(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


def _as_int(value: str | None, default: int = 0) -> int:
    if is_blank(value):
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def parse_report(document: str | bytes, analysis: str = "dynamic") -> RawFacts:
    """Extract flaw counts, policy data and composition facts from a detailed report.

    ``analysis`` selects which flaw collection and score element are read
    ("dynamic" or "static").
    """
    if analysis not in FLAW_ELEMENTS:
        raise ValueError(f"Unsupported analysis type: {analysis}")

    root = load_document(document)
    if _local_name(root.tag) != "detailedreport":
        raise MalformedReportError(f"Unexpected root element: {_local_name(root.tag)}")

    policy_name = root.get("policy_name", "")
    compliance = root.get("policy_compliance_status", "")
    level = root.get("veracode_level", "")
    if is_blank(policy_name) or is_blank(compliance) or is_blank(level):
        raise MalformedReportError("Missing required policy information in detailed report.")

    counts, mitigated, policy_affected = _count_flaws(root, FLAW_ELEMENTS[analysis])

    return RawFacts(
        account_id=root.get("account_id", ""),
        app_id=root.get("app_id", ""),
        build_id=root.get("build_id", ""),
        policy_name=policy_name,
        policy_compliance_status=compliance,
        veracode_level=level,
        score=_parse_score(root, analysis),
        scan_overdue=_as_bool(root.get("scan_overdue")),
        counts=tuple(counts),
        mitigated=tuple(mitigated),
        policy_affected=tuple(policy_affected),
        net_change=_parse_net_change(root),
        sca=_parse_sca(root),
    )


def _parse_score(root: ET.Element, analysis: str) -> int:
    node = root.find(f"./{{*}}{analysis}-analysis")
    if node is None:
        raise MalformedReportError(f"Detailed report has no {analysis}-analysis element.")
    try:
        return int(node.get("score", "").strip())
    except ValueError as exc:
        raise MalformedReportError(f"Invalid {analysis} analysis score.") from exc


def _count_flaws(root: ET.Element, flaw_element: str):
    counts = [0] * len(SEVERITY_LEVELS)
    mitigated = [False] * len(SEVERITY_LEVELS)
    policy_affected = [False] * len(SEVERITY_LEVELS)

    path = f"./{{*}}severity/{{*}}category/{{*}}cwe/{{*}}{flaw_element}/{{*}}flaw"
    for flaw in root.findall(path):
        try:
            sev = SeverityLevel.parse(flaw.get("severity"))
        except ValueError:
            LOGGER.debug("Skipping flaw %s with invalid severity %r", flaw.get("issueid"), flaw.get("severity"))
            continue

        if _as_bool(flaw.get("affects_policy_compliance")):
            policy_affected[sev] = True

        if flaw.get("remediation_status", "") == REMEDIATION_FIXED:
            continue
        if flaw.get("mitigation_status", "") == MITIGATION_ACCEPTED:
            mitigated[sev] = True
        else:
            counts[sev] += 1

    return counts, mitigated, policy_affected


def _parse_net_change(root: ET.Element) -> tuple[int, ...]:
    # The report schema never emits sev-0-change, so severity 0 stays at zero.
    node = root.find("./{*}flaw-status")
    if node is None:
        return (0,) * len(SEVERITY_LEVELS)
    return tuple(_as_int(node.get(f"sev-{sev.value}-change")) for sev in SEVERITY_LEVELS)


def _parse_sca(root: ET.Element) -> ScaFacts | None:
    sca = root.find("./{*}software_composition_analysis")
    if sca is None:
        return None

    components_path = "./{*}vulnerable_components/{*}component"
    counts = [0] * len(SEVERITY_LEVELS)
    mitigated = [False] * len(SEVERITY_LEVELS)
    for vul in sca.findall(components_path + "/{*}vulnerabilities/{*}vulnerability"):
        try:
            sev = SeverityLevel.parse(vul.get("severity"))
        except ValueError:
            continue
        if _as_bool(vul.get("mitigation")):
            mitigated[sev] = True
        else:
            counts[sev] += 1

    max_score = -1.0
    components: Dict[str, ScaComponent] = {}
    for comp in sca.findall(components_path):
        raw_score = comp.get("max_cvss_score")
        if not is_blank(raw_score):
            try:
                max_score = max(max_score, float(raw_score))
            except ValueError:
                pass
        name = comp.get("file_name", "")
        if name not in components:
            components[name] = ScaComponent(
                name=name,
                blacklisted=_as_bool(comp.get("blacklisted")),
                new=_as_bool(comp.get("new")),
                violates_policy=_as_bool(comp.get("component_affects_policy_compliance")),
            )

    blacklisted = sca.get("blacklisted_components")
    if blacklisted is None:
        blacklisted = sca.get("blocklisted_components")

    return ScaFacts(
        counts=tuple(counts),
        mitigated=tuple(mitigated),
        max_cvss_score=max_score,
        blacklisted_count=_as_int(blacklisted, default=-1),
        components=tuple(components.values()),
    )


def parse_build_status(build_info: str | bytes) -> str:
    """Return the status of the first analysis unit in a build info document."""
    root = load_document(build_info)
    unit = root.find("./*/{*}analysis_unit")
    if unit is None:
        raise MalformedReportError("Build info has no analysis_unit element.")
    return unit.get("status", "")


def parse_build_id(build_info: str | bytes) -> str:
    root = load_document(build_info)
    build = root.find("./{*}build[@build_id]")
    return build.get("build_id", "") if build is not None else ""


def parse_error_string(document: str | None) -> str:
    """Collect the text of every <error> element, one per line."""
    if is_blank(document):
        return ""
    errors: List[str] = _ERROR_PATTERN.findall(document)
    return "\n".join(errors)
