from __future__ import annotations

import logging
from typing import List, Optional, Protocol

import requests
from requests.auth import AuthBase, HTTPBasicAuth

from scanreview.core.config import ReviewConfig
from scanreview.core.models import AnalysisInfo, OccurrenceStatus, ScanOccurrence
from scanreview.core.report import parse_error_string
from scanreview.core.utils import ApiError, is_blank

LOGGER = logging.getLogger(__name__)


class AnalysisServiceClient(Protocol):
    def get_analysis_by_name(self, name: str) -> Optional[AnalysisInfo]:
        ...

    def resubmit_analysis_by_id(self, analysis_id: str, max_duration_hours: int) -> None:
        ...

    def get_latest_analysis_occurrence(self, occurrence_id: str) -> Optional[OccurrenceStatus]:
        ...

    def get_scan_occurrences(self, occurrence_id: str) -> List[ScanOccurrence]:
        ...

    def get_build_info(self, app_id: str, build_id: str) -> str:
        ...

    def get_detailed_report(self, build_id: str) -> str:
        ...


def _embedded(payload: dict, key: str) -> list:
    return (payload or {}).get("_embedded", {}).get(key, []) or []


class RestAnalysisClient:
    """Analysis service client speaking the REST (JSON) and XML APIs over ``requests``."""

    def __init__(
        self,
        config: ReviewConfig,
        session: requests.Session | None = None,
        auth: AuthBase | None = None,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.session.auth = auth or HTTPBasicAuth(config.api_id, config.api_key)
        self._proxies_applied = False

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        LOGGER.debug("%s %s", method, url)
        if not self._proxies_applied:
            self.session.proxies.update(self.config.requests_proxies() or {})
            self._proxies_applied = True
        try:
            resp = self.session.request(method, url, timeout=self.config.request_timeout, **kwargs)
        except requests.RequestException as exc:
            raise ApiError(f"Request to {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ApiError(
                f"Server returned HTTP response code: {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp

    def _rest(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self.config.rest_base_url.rstrip("/") + path
        return self._request(method, url, **kwargs)

    def _xml(self, endpoint: str, params: dict) -> str:
        url = self.config.xml_base_url.rstrip("/") + "/" + endpoint
        text = self._request("GET", url, params=params).text
        error = parse_error_string(text)
        if error:
            raise ApiError(error)
        return text

    def get_analysis_by_name(self, name: str) -> Optional[AnalysisInfo]:
        analyses = _embedded(self._rest("GET", "/analyses", params={"name": name}).json(), "analyses")
        for item in analyses:
            if item.get("name") == name:
                status = item.get("latest_occurrence_status") or {}
                return AnalysisInfo(
                    analysis_id=item.get("analysis_id", ""),
                    name=item.get("name", ""),
                    occurrence_id=item.get("latest_occurrence_id"),
                    status=status.get("status_type"),
                )
        return None

    def resubmit_analysis_by_id(self, analysis_id: str, max_duration_hours: int) -> None:
        body = {
            "schedule": {
                "now": True,
                "duration": {"length": max_duration_hours, "unit": "HOUR"},
            }
        }
        self._rest("PUT", f"/analyses/{analysis_id}", params={"method": "PATCH"}, json=body)

    def get_latest_analysis_occurrence(self, occurrence_id: str) -> Optional[OccurrenceStatus]:
        try:
            payload = self._rest("GET", f"/analysis_occurrences/{occurrence_id}").json()
        except ApiError as exc:
            if exc.status_code == 404:
                return None
            raise
        status = payload.get("status") or {}
        return OccurrenceStatus(occurrence_id=occurrence_id, status=status.get("status_type"))

    def get_scan_occurrences(self, occurrence_id: str) -> List[ScanOccurrence]:
        payload = self._rest("GET", f"/analysis_occurrences/{occurrence_id}/scan_occurrences").json()
        occurrences = []
        for item in _embedded(payload, "scan_occurrences"):
            linked = item.get("linked_app_data") or {}
            occurrences.append(
                ScanOccurrence(
                    linked_app_id=item.get("linked_platform_app_id"),
                    linked_app_name=item.get("linked_platform_app_name"),
                    linked_build_id=linked.get("build_id"),
                )
            )
        return occurrences

    def get_build_info(self, app_id: str, build_id: str) -> str:
        if is_blank(app_id):
            raise ValueError("Application ID is invalid.")
        if is_blank(build_id):
            raise ValueError("Build ID is invalid.")
        return self._xml("getbuildinfo.do", {"app_id": app_id, "build_id": build_id})

    def get_detailed_report(self, build_id: str) -> str:
        if is_blank(build_id):
            raise ValueError("Build ID is invalid.")
        return self._xml("detailedreport.do", {"build_id": build_id})
