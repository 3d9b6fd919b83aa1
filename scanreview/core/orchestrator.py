"""Review of a submitted dynamic analysis.

The review walks the remote workflow phase by phase, each phase polling
through the same retry loop:

1. DISCOVER_OCCURRENCE - wait for a new analysis occurrence to appear.
2. AWAIT_COMPLETION - wait for the occurrence to publish its results.
3. AWAIT_LINKING - wait for the results to be linked to an application build.
4. AWAIT_BUILD_READY - wait for policy evaluation of the linked build.
5. FETCH_AND_PARSE - read the detailed report and reconcile it with history.

Transient service errors (HTTP 500/504) are retried after the poll interval
up to a fixed number of consecutive failures; any other error is fatal.
The deadline is fixed once when the review starts.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Hashable

from scanreview.core import config as config_mod
from scanreview.core import storage
from scanreview.core.client import AnalysisServiceClient
from scanreview.core.config import PackageVersionProvider, ReviewConfig, VersionInfoProvider
from scanreview.core.history import BuildHistoryProvider, build_record
from scanreview.core.models import ScanOccurrence, ScanRecord
from scanreview.core.report import parse_build_status, parse_report
from scanreview.core.utils import (
    AmbiguousLinkError,
    ApiError,
    ReviewError,
    ReviewInterrupted,
    ReviewTimeoutError,
    TerminalAnalysisFailure,
    TransientServiceError,
    UnlinkedApplicationError,
    is_blank,
)

LOGGER = logging.getLogger(__name__)

REVIEW_ACTION_NAME = "Review Dynamic Analysis Results"

FINISHED_RESULTS_AVAILABLE = "FINISHED_RESULTS_AVAILABLE"
TERMINAL_FAILURE_STATUSES = frozenset({
    "VERIFICATION_FAILED",
    "STOPPED",
    "STOPPED_TIME",
    "STOPPED_TIME_VERIFYING_RESULTS",
    "STOPPED_TECHNICAL_ISSUE",
    "STOPPED_VERIFYING_RESULTS_BY_USER",
    "STOPPED_VERIFYING_RESULTS",
})

ERROR_HINTS = {
    401: "Please verify the API credentials and that this machine's IP address is not restricted.",
    403: "Please verify the account is configured with sufficient privilege.",
    500: "Internal Server Error",
    504: "Gateway Timeout Error",
}


class Phase(str, Enum):
    DISCOVER = "DISCOVER_OCCURRENCE"
    AWAIT_COMPLETION = "AWAIT_COMPLETION"
    AWAIT_LINKING = "AWAIT_LINKING"
    AWAIT_BUILD_READY = "AWAIT_BUILD_READY"
    FETCH_AND_PARSE = "FETCH_AND_PARSE"


@dataclass(frozen=True)
class PollResult:
    done: bool
    value: Any = None
    message: str = ""

    @classmethod
    def ready(cls, value: Any) -> "PollResult":
        return cls(done=True, value=value)

    @classmethod
    def waiting(cls, message: str) -> "PollResult":
        return cls(done=False, message=message)


@dataclass(frozen=True)
class PhaseFailure:
    phase: Phase | None
    cause: Exception

    def __str__(self) -> str:
        phase = self.phase.value if self.phase else "VALIDATE"
        return f"{phase}: {self.cause}"


@dataclass(frozen=True)
class ReviewOutcome:
    record: ScanRecord
    success: bool
    failure: PhaseFailure | None = None

    @property
    def timed_out(self) -> bool:
        return self.failure is not None and isinstance(self.failure.cause, ReviewTimeoutError)

    @property
    def failed(self) -> bool:
        return self.failure is not None


class PollingOrchestrator:
    def __init__(
        self,
        client: AnalysisServiceClient,
        history: BuildHistoryProvider,
        config: ReviewConfig | None = None,
        version_provider: VersionInfoProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        cancel_event: threading.Event | None = None,
    ):
        self.client = client
        self.history = history
        self.config = config or ReviewConfig()
        self.version_provider = version_provider or PackageVersionProvider()
        self._sleep_fn = sleep
        self._clock = clock
        self._cancel_event = cancel_event
        self._phase: Phase | None = None

    def review_dynamic_analysis(
        self,
        analysis_name: str,
        previous_occurrence_id: str | None,
        wait_hours: int,
        fail_on_policy_violation: bool,
        build_ref: Hashable,
    ) -> ReviewOutcome:
        """Wait for the analysis to finish and return the build's record.

        Never raises: every failure is logged and turned into an empty record
        with ``success=False``.
        """
        LOGGER.info("Starting: %s", REVIEW_ACTION_NAME)
        deadline = self._clock() + wait_hours * 3600
        self._phase = None

        try:
            if self.config.debug:
                self._log_debug_info()
            LOGGER.info(
                "Dynamic Analysis name: %s, results wait time (in hours): %s, "
                "fail the build for policy violation: %s, use proxy: %s",
                analysis_name, wait_hours, fail_on_policy_violation, self.config.proxy is not None,
            )
            config_mod.validate_review_inputs(self.config, analysis_name, wait_hours)
            LOGGER.info(
                "Requesting dynamic analysis results for '%s' with results wait time duration of %s hour(s).",
                analysis_name, wait_hours,
            )

            occurrence_id = self._run_phase(Phase.DISCOVER, deadline, lambda: self._discover(analysis_name, previous_occurrence_id))
            self._run_phase(Phase.AWAIT_COMPLETION, deadline, lambda: self._check_completion(occurrence_id))
            linked = self._run_phase(Phase.AWAIT_LINKING, deadline, lambda: self._check_linking(occurrence_id))
            LOGGER.info("Requesting dynamic analysis linked results")
            self._run_phase(Phase.AWAIT_BUILD_READY, deadline, lambda: self._check_build_ready(linked))

            self._phase = Phase.FETCH_AND_PARSE
            record = self._fetch_and_parse(linked, build_ref)
        except ReviewError as exc:
            return self._failure(exc)
        except KeyboardInterrupt:
            return self._failure(ReviewInterrupted("Review interrupted"))
        except Exception as exc:
            LOGGER.exception("Unexpected error handling dynamic analysis review")
            return self._failure(exc)

        LOGGER.info("The Dynamic Analysis finished with policy rule status: %s", record.policy_compliance_status)
        LOGGER.info("Finished: %s", REVIEW_ACTION_NAME)
        passed = record.policy_compliance_status.lower() == config_mod.PASSED.lower()
        return ReviewOutcome(record=record, success=passed or not fail_on_policy_violation)

    def _failure(self, exc: Exception) -> ReviewOutcome:
        phase = self._phase.value if self._phase else "VALIDATE"
        if isinstance(exc, ReviewTimeoutError):
            LOGGER.error("Timeout waiting for dynamic analysis results in phase %s.", phase)
        elif isinstance(exc, ReviewInterrupted):
            LOGGER.error("Review interrupted in phase %s.", phase)
        else:
            LOGGER.error("Review failed in phase %s: %s", phase, exc)
        return ReviewOutcome(
            record=ScanRecord.empty(),
            success=False,
            failure=PhaseFailure(phase=self._phase, cause=exc),
        )

    def _run_phase(self, phase: Phase, deadline: float, attempt: Callable[[], PollResult]) -> Any:
        """Poll ``attempt`` until it is done, the deadline passes or errors pile up."""
        self._phase = phase
        errors = 0
        interval = self.config.poll_interval_minutes
        while True:
            self._check_cancelled()
            try:
                result = attempt()
            except ApiError as exc:
                self._log_api_error(phase, exc)
                if not exc.is_transient:
                    raise
                errors += 1
                if errors >= self.config.max_consecutive_errors:
                    raise TransientServiceError(
                        f"{errors} consecutive service errors in phase {phase.value}"
                    ) from exc
                if self._expired(deadline):
                    raise ReviewTimeoutError(phase.value) from exc
                LOGGER.info("Retrying %s in %s minutes.", phase.value, interval)
                self._sleep()
                if self._expired(deadline):
                    raise ReviewTimeoutError(phase.value) from exc
                continue

            errors = 0
            if self._expired(deadline):
                raise ReviewTimeoutError(phase.value)
            if result.done:
                return result.value
            LOGGER.info("%s Checking again in %s minutes.", result.message, interval)
            self._sleep()
            if self._expired(deadline):
                raise ReviewTimeoutError(phase.value)

    def _discover(self, analysis_name: str, previous_occurrence_id: str | None) -> PollResult:
        info = self.client.get_analysis_by_name(analysis_name)
        occurrence_id = info.occurrence_id if info is not None else None
        if is_blank(occurrence_id) or occurrence_id == previous_occurrence_id:
            return PollResult.waiting("Dynamic analysis not yet initiated.")
        LOGGER.info("Found dynamic analysis occurrence id: %s", occurrence_id)
        return PollResult.ready(occurrence_id)

    def _check_completion(self, occurrence_id: str) -> PollResult:
        occurrence = self.client.get_latest_analysis_occurrence(occurrence_id)
        if occurrence is None:
            return PollResult.waiting("Dynamic analysis occurrence not found.")
        status = (occurrence.status or "").upper()
        if status == FINISHED_RESULTS_AVAILABLE:
            LOGGER.info("The dynamic analysis finished with occurrence id: %s", occurrence_id)
            LOGGER.info("The next step is linking the analysis to the application for policy evaluation.")
            return PollResult.ready(status)
        if status in TERMINAL_FAILURE_STATUSES:
            raise TerminalAnalysisFailure(status)
        return PollResult.waiting(f"The status of the dynamic analysis is: {occurrence.status}.")

    def _check_linking(self, occurrence_id: str) -> PollResult:
        occurrences = list(self.client.get_scan_occurrences(occurrence_id) or [])
        if len(occurrences) > 1:
            raise AmbiguousLinkError(f"Multiple scan occurrences found for occurrence {occurrence_id}.")
        if not occurrences:
            return PollResult.waiting("Linked application data is not available.")
        linked = occurrences[0]
        if is_blank(linked.linked_app_id):
            raise UnlinkedApplicationError(
                "Linked application is unknown. Verify dynamic analysis is linked to an application."
            )
        if is_blank(linked.linked_build_id):
            return PollResult.waiting("Build id is not available.")
        LOGGER.info("The linked application is: %s (appid=%s)", linked.linked_app_name, linked.linked_app_id)
        LOGGER.info("The linked application build ID is: %s", linked.linked_build_id)
        return PollResult.ready(linked)

    def _check_build_ready(self, linked: ScanOccurrence) -> PollResult:
        build_info = self.client.get_build_info(linked.linked_app_id, linked.linked_build_id)
        if is_blank(build_info):
            raise ReviewError("Error getting build info after analysis linked")
        status = parse_build_status(build_info)
        if status.lower() == config_mod.RESULTS_READY.lower():
            LOGGER.info("Dynamic analysis linking is complete with status: %s", status)
            return PollResult.ready(status)
        return PollResult.waiting(f"The linking status of the dynamic analysis is: {status}.")

    def _fetch_and_parse(self, linked: ScanOccurrence, build_ref: Hashable) -> ScanRecord:
        self._check_cancelled()
        report = self.client.get_detailed_report(linked.linked_build_id)
        facts = parse_report(report, analysis="dynamic")
        return build_record(
            facts,
            self.history,
            build_ref,
            app_id=linked.linked_app_id,
            build_id=linked.linked_build_id,
            timestamp=int(self._clock() * 1000),
        )

    def _expired(self, deadline: float) -> bool:
        return self._clock() > deadline

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ReviewInterrupted("Review cancelled")

    def _sleep(self) -> None:
        seconds = self.config.poll_interval_seconds
        if self._cancel_event is not None:
            if self._cancel_event.wait(seconds):
                raise ReviewInterrupted("Review cancelled while waiting")
            return
        try:
            self._sleep_fn(seconds)
        except KeyboardInterrupt as exc:
            raise ReviewInterrupted("Review interrupted while waiting") from exc

    def _log_api_error(self, phase: Phase, exc: ApiError) -> None:
        LOGGER.warning(
            "API error in phase %s. Server returned HTTP response code: %s (%s)",
            phase.value, exc.status_code, exc,
        )
        hint = ERROR_HINTS.get(exc.status_code)
        if hint:
            LOGGER.warning(hint)

    def _log_debug_info(self) -> None:
        LOGGER.info("[Debug mode is on]")
        LOGGER.info("Version: %s", self.version_provider.version())
        LOGGER.info("Package location: %s", Path(__file__).resolve().parents[1])


def review_build(
    orchestrator: PollingOrchestrator,
    build_number: int,
    wait_hours: int,
    fail_on_policy_violation: bool,
    runs_dir: Path | None = None,
) -> ReviewOutcome:
    """Review the analysis resubmitted by ``build_number`` and store its record."""
    props = storage.load_review_properties(build_number, runs_dir)
    outcome = orchestrator.review_dynamic_analysis(
        props.analysis_name if props else "",
        props.previous_occurrence_id if props else None,
        wait_hours,
        fail_on_policy_violation,
        build_number,
    )
    storage.store_record(build_number, outcome.record, runs_dir)
    return outcome
