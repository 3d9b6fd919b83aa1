from __future__ import annotations

import os
from importlib import metadata
from typing import Protocol
from urllib.parse import quote

from pydantic import BaseModel

from scanreview.core.utils import InvalidInputError, is_blank

DEFAULT_REST_BASE_URL = "https://api.veracode.com/was/configservice/v1"
DEFAULT_XML_BASE_URL = "https://analysiscenter.veracode.com/api/5.0"

POLL_INTERVAL_MINUTES = 5
MAX_CONSECUTIVE_API_ERRORS = 5
RESULTS_READY = "Results Ready"
PASSED = "Pass"

DEFAULT_MAX_DURATION_HOURS = 72
MIN_MAX_DURATION_HOURS = 1
MAX_MAX_DURATION_HOURS = 600
MIN_WAIT_FOR_RESULTS_HOURS = 0
MAX_WAIT_FOR_RESULTS_HOURS = 600


class ProxySettings(BaseModel):
    host: str = ""
    port: str = ""
    user: str | None = None
    password: str | None = None

    def validate_settings(self) -> None:
        if is_blank(self.host) or is_blank(self.port):
            raise InvalidInputError("Proxy is enabled, but the host or port is empty")
        try:
            int(self.port)
        except ValueError as exc:
            raise InvalidInputError("Invalid port number for proxy") from exc

    def as_requests_proxies(self) -> dict[str, str]:
        self.validate_settings()
        credentials = ""
        if not is_blank(self.user) and not is_blank(self.password):
            credentials = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}@"
        url = f"http://{credentials}{self.host}:{int(self.port)}"
        return {"http": url, "https": url}


class ReviewConfig(BaseModel):
    api_id: str = ""
    api_key: str = ""
    proxy: ProxySettings | None = None
    debug: bool = False
    rest_base_url: str = DEFAULT_REST_BASE_URL
    xml_base_url: str = DEFAULT_XML_BASE_URL
    poll_interval_minutes: float = POLL_INTERVAL_MINUTES
    max_consecutive_errors: int = MAX_CONSECUTIVE_API_ERRORS
    request_timeout: int = 60

    @classmethod
    def from_env(cls) -> "ReviewConfig":
        proxy = None
        if os.getenv("SCANREVIEW_PROXY_HOST"):
            proxy = ProxySettings(
                host=os.getenv("SCANREVIEW_PROXY_HOST", ""),
                port=os.getenv("SCANREVIEW_PROXY_PORT", ""),
                user=os.getenv("SCANREVIEW_PROXY_USER"),
                password=os.getenv("SCANREVIEW_PROXY_PASSWORD"),
            )
        return cls(
            api_id=os.getenv("SCANREVIEW_API_ID", ""),
            api_key=os.getenv("SCANREVIEW_API_KEY", ""),
            proxy=proxy,
            debug=os.getenv("SCANREVIEW_DEBUG", "").lower() in ("1", "true", "yes"),
            rest_base_url=os.getenv("SCANREVIEW_REST_BASE_URL", DEFAULT_REST_BASE_URL),
            xml_base_url=os.getenv("SCANREVIEW_XML_BASE_URL", DEFAULT_XML_BASE_URL),
            poll_interval_minutes=float(os.getenv("SCANREVIEW_POLL_INTERVAL_MINUTES", POLL_INTERVAL_MINUTES)),
        )

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_minutes * 60

    def requests_proxies(self) -> dict[str, str] | None:
        return self.proxy.as_requests_proxies() if self.proxy else None


def _check_credentials(config: ReviewConfig, message: str) -> None:
    if is_blank(config.api_id) or is_blank(config.api_key):
        raise InvalidInputError(message)


def check_wait_for_results_duration(hours: int) -> str | None:
    if hours < MIN_WAIT_FOR_RESULTS_HOURS or hours > MAX_WAIT_FOR_RESULTS_HOURS:
        return f"Enter a wait for results duration of up to {MAX_WAIT_FOR_RESULTS_HOURS} hours (25 days)."
    return None


def check_maximum_duration(hours: int) -> str | None:
    if hours < MIN_MAX_DURATION_HOURS or hours > MAX_MAX_DURATION_HOURS:
        return f"Enter a maximum duration of {MIN_MAX_DURATION_HOURS}-{MAX_MAX_DURATION_HOURS} hours."
    return None


def validate_review_inputs(config: ReviewConfig, analysis_name: str | None, wait_hours: int) -> None:
    """Reject a review request before any network call is made."""
    _check_credentials(config, "Error requesting Dynamic Analysis results - required API ID and key credentials not provided")
    error = check_wait_for_results_duration(wait_hours)
    if error:
        raise InvalidInputError(error)
    if is_blank(analysis_name):
        raise InvalidInputError(
            "Dynamic Analysis scan name is unknown. Verify the resubmit step ran successfully "
            "in this build prior to requesting results."
        )
    if config.proxy is not None:
        config.proxy.validate_settings()


def validate_resubmit_inputs(config: ReviewConfig, analysis_name: str | None, max_duration_hours: int) -> None:
    _check_credentials(config, "No dynamic analysis submitted. Required API ID and key credentials not provided.")
    if is_blank(analysis_name):
        raise InvalidInputError("Dynamic analysis name is empty")
    error = check_maximum_duration(max_duration_hours)
    if error:
        raise InvalidInputError(error)
    if config.proxy is not None:
        config.proxy.validate_settings()


class VersionInfoProvider(Protocol):
    def version(self) -> str:
        ...


class PackageVersionProvider:
    def __init__(self, distribution: str = "scanreview"):
        self.distribution = distribution

    def version(self) -> str:
        try:
            return metadata.version(self.distribution)
        except metadata.PackageNotFoundError:
            return "unknown"
