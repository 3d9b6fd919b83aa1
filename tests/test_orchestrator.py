import logging
import threading

import pytest

from conftest import ScriptedClient, happy_client, read_fixture
from scanreview.core.config import ReviewConfig
from scanreview.core.history import InMemoryBuildHistory
from scanreview.core.models import AnalysisInfo, OccurrenceStatus, ScanOccurrence
from scanreview.core.orchestrator import Phase, PollingOrchestrator
from scanreview.core.utils import (
    AmbiguousLinkError,
    ApiError,
    InvalidInputError,
    MalformedReportError,
    ReviewInterrupted,
    TerminalAnalysisFailure,
    TransientServiceError,
    UnlinkedApplicationError,
)

POLL_SECONDS = 300


class DummyVersion:
    def version(self):
        return "9.9.9"


def make(client, config, clock, history=None, **kwargs):
    if history is None:
        history = InMemoryBuildHistory()
        history.add_build(1)
    return PollingOrchestrator(client, history, config=config, sleep=clock.sleep, clock=clock, **kwargs)


def review(orchestrator, prior="occ-1", wait_hours=1, fail_on_policy=True, build=1):
    return orchestrator.review_dynamic_analysis("storefront", prior, wait_hours, fail_on_policy, build)


def test_happy_path_builds_record(config, clock):
    client = happy_client()
    outcome = review(make(client, config, clock))
    assert outcome.failure is None
    assert outcome.record.available
    assert outcome.record.total_count == 5
    assert outcome.record.build_id == "3003"
    assert outcome.record.trend.samples[0].timestamp == int(clock.now * 1000)
    # "Did Not Pass" with fail-on-policy
    assert outcome.success is False
    assert clock.sleeps == []


def test_policy_violation_ignored_when_not_failing_on_policy(config, clock):
    outcome = review(make(happy_client(), config, clock), fail_on_policy=False)
    assert outcome.success is True
    assert outcome.record.policy_compliance_status == "Did Not Pass"


def test_passing_policy_succeeds(config, clock):
    outcome = review(make(happy_client("detailed_report_pass.xml"), config, clock))
    assert outcome.success is True


def test_discovery_ignores_prior_occurrence(config, clock):
    client = happy_client()
    client.scripts["get_analysis_by_name"] = [
        AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-1"),
        AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id=""),
        AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-2"),
    ]
    outcome = review(make(client, config, clock), prior="occ-1")
    assert outcome.record.available
    assert client.count("get_analysis_by_name") == 3
    assert clock.sleeps == [POLL_SECONDS, POLL_SECONDS]
    assert client.calls[3] == ("get_latest_analysis_occurrence", ("occ-2",))


def test_stopped_status_aborts_without_retry(config, clock):
    client = happy_client()
    client.scripts["get_latest_analysis_occurrence"] = [OccurrenceStatus(occurrence_id="occ-2", status="STOPPED")]
    outcome = review(make(client, config, clock))
    assert outcome.success is False
    assert outcome.record.is_empty
    assert isinstance(outcome.failure.cause, TerminalAnalysisFailure)
    assert outcome.failure.phase is Phase.AWAIT_COMPLETION
    assert client.count("get_latest_analysis_occurrence") == 1
    assert clock.sleeps == []
    assert not outcome.timed_out


def test_missing_occurrence_and_running_status_are_retried(config, clock):
    client = happy_client()
    client.scripts["get_latest_analysis_occurrence"] = [
        None,
        OccurrenceStatus(occurrence_id="occ-2", status="IN_PROGRESS"),
        OccurrenceStatus(occurrence_id="occ-2", status="finished_results_available"),
    ]
    outcome = review(make(client, config, clock))
    assert outcome.record.available
    assert len(clock.sleeps) == 2


def test_three_transient_errors_then_success(config, clock):
    client = happy_client()
    client.scripts["get_analysis_by_name"] = [
        ApiError("boom", status_code=500),
        ApiError("boom", status_code=504),
        ApiError("boom", status_code=500),
        AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-2"),
    ]
    outcome = review(make(client, config, clock))
    assert outcome.record.available
    assert client.count("get_analysis_by_name") == 4
    assert len(clock.sleeps) == 3


def test_five_consecutive_transient_errors_abort(config, clock):
    client = happy_client()
    client.scripts["get_analysis_by_name"] = [ApiError("down", status_code=500)]
    outcome = review(make(client, config, clock), wait_hours=600)
    assert outcome.success is False
    assert outcome.record.is_empty
    assert isinstance(outcome.failure.cause, TransientServiceError)
    assert client.count("get_analysis_by_name") == 5
    assert not outcome.timed_out


def test_error_counter_resets_after_success(config, clock):
    client = happy_client()
    err = ApiError("down", status_code=504)
    pending = AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-1")
    client.scripts["get_analysis_by_name"] = [
        err, err, err, err, pending, err, err, err, err,
        AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-2"),
    ]
    outcome = review(make(client, config, clock), wait_hours=24)
    assert outcome.record.available
    assert client.count("get_analysis_by_name") == 10


def test_counter_is_per_phase(config, clock):
    client = happy_client()
    err = ApiError("down", status_code=500)
    client.scripts["get_analysis_by_name"] = [
        err, err, err, err,
        AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-2"),
    ]
    client.scripts["get_latest_analysis_occurrence"] = [
        err, err, err, err,
        OccurrenceStatus(occurrence_id="occ-2", status="FINISHED_RESULTS_AVAILABLE"),
    ]
    outcome = review(make(client, config, clock), wait_hours=24)
    assert outcome.record.available


@pytest.mark.parametrize("code", [401, 403, 404, 0])
def test_non_transient_error_is_fatal(config, clock, code, caplog):
    client = happy_client()
    client.scripts["get_analysis_by_name"] = [ApiError("nope", status_code=code)]
    with caplog.at_level(logging.WARNING):
        outcome = review(make(client, config, clock))
    assert outcome.success is False
    assert isinstance(outcome.failure.cause, ApiError)
    assert client.count("get_analysis_by_name") == 1
    assert f"HTTP response code: {code}" in caplog.text


def test_deadline_expires_while_waiting(config, clock):
    client = happy_client()
    client.scripts["get_analysis_by_name"] = [AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-1")]
    outcome = review(make(client, config, clock), wait_hours=1)
    assert outcome.timed_out
    assert outcome.success is False
    assert outcome.record.is_empty
    assert outcome.failure.phase is Phase.DISCOVER
    # the 13th sleep crosses the one hour deadline
    assert len(clock.sleeps) == 13


def test_zero_wait_hours_gives_a_single_attempt(config, clock):
    client = happy_client()
    client.scripts["get_analysis_by_name"] = [AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-1")]
    outcome = review(make(client, config, clock), wait_hours=0)
    assert outcome.timed_out
    assert client.count("get_analysis_by_name") == 1


def test_deadline_is_fixed_at_start(config, clock):
    client = happy_client()
    client.scripts["get_latest_analysis_occurrence"] = [OccurrenceStatus(occurrence_id="occ-2", status="IN_PROGRESS")]
    client.scripts["get_analysis_by_name"] = [
        AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-1"),
    ] * 6 + [AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-2")]
    outcome = review(make(client, config, clock), wait_hours=1)
    assert outcome.timed_out
    assert outcome.failure.phase is Phase.AWAIT_COMPLETION
    assert len(clock.sleeps) == 13


def test_multiple_scan_occurrences_are_fatal(config, clock):
    client = happy_client()
    linked = ScanOccurrence(linked_app_id="2002", linked_build_id="3003")
    client.scripts["get_scan_occurrences"] = [[linked, linked]]
    outcome = review(make(client, config, clock))
    assert isinstance(outcome.failure.cause, AmbiguousLinkError)
    assert outcome.failure.phase is Phase.AWAIT_LINKING


def test_unlinked_application_is_fatal(config, clock):
    client = happy_client()
    client.scripts["get_scan_occurrences"] = [[ScanOccurrence(linked_app_id="", linked_build_id="3003")]]
    outcome = review(make(client, config, clock))
    assert isinstance(outcome.failure.cause, UnlinkedApplicationError)


def test_waits_for_linked_build_id(config, clock):
    client = happy_client()
    client.scripts["get_scan_occurrences"] = [
        [],
        [ScanOccurrence(linked_app_id="2002", linked_app_name="Storefront")],
        [ScanOccurrence(linked_app_id="2002", linked_app_name="Storefront", linked_build_id="3003")],
    ]
    outcome = review(make(client, config, clock))
    assert outcome.record.available
    assert client.count("get_scan_occurrences") == 3


def test_waits_for_results_ready(config, clock):
    client = happy_client()
    client.scripts["get_build_info"] = [read_fixture("build_info_pending.xml"), read_fixture("build_info.xml")]
    outcome = review(make(client, config, clock))
    assert outcome.record.available
    assert client.calls[-2] == ("get_build_info", ("2002", "3003"))
    assert len(clock.sleeps) == 1


def test_malformed_report_is_fatal(config, clock):
    client = happy_client()
    client.scripts["get_detailed_report"] = ["<detailedreport"]
    outcome = review(make(client, config, clock))
    assert isinstance(outcome.failure.cause, MalformedReportError)
    assert outcome.failure.phase is Phase.FETCH_AND_PARSE
    assert outcome.record.is_empty


def test_invalid_input_fails_before_network(clock):
    client = happy_client()
    outcome = review(make(client, ReviewConfig(), clock))
    assert isinstance(outcome.failure.cause, InvalidInputError)
    assert outcome.failure.phase is None
    assert client.calls == []


def test_blank_analysis_name_rejected(config, clock):
    client = happy_client()
    outcome = make(client, config, clock).review_dynamic_analysis("", None, 1, True, 1)
    assert isinstance(outcome.failure.cause, InvalidInputError)
    assert client.calls == []


def test_cancel_event_interrupts_wait(config, clock):
    client = happy_client()
    client.scripts["get_analysis_by_name"] = [AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-1")]
    cancel = threading.Event()
    cancel.set()
    outcome = review(make(client, config, clock, cancel_event=cancel))
    assert isinstance(outcome.failure.cause, ReviewInterrupted)
    assert outcome.record.is_empty
    assert client.calls == []


def test_keyboard_interrupt_during_sleep(config):
    client = ScriptedClient(analyses=[AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id="occ-1")])

    def interrupted_sleep(seconds):
        raise KeyboardInterrupt

    history = InMemoryBuildHistory()
    history.add_build(1)
    orchestrator = PollingOrchestrator(client, history, config=config, sleep=interrupted_sleep, clock=lambda: 0.0)
    outcome = review(orchestrator)
    assert isinstance(outcome.failure.cause, ReviewInterrupted)
    assert client.count("get_analysis_by_name") == 1


class InterruptedClient(ScriptedClient):
    def get_analysis_by_name(self, name):
        self.calls.append(("get_analysis_by_name", (name,)))
        raise KeyboardInterrupt


def test_keyboard_interrupt_during_remote_call(config, clock):
    client = InterruptedClient()
    outcome = review(make(client, config, clock))
    assert outcome.success is False
    assert outcome.record.is_empty
    assert isinstance(outcome.failure.cause, ReviewInterrupted)
    assert outcome.failure.phase is Phase.DISCOVER
    assert clock.sleeps == []


class SlowLinkingClient(ScriptedClient):
    """Linking answer arrives only after a long round trip."""

    def __init__(self, clock, delay, **scripts):
        super().__init__(**scripts)
        self.clock = clock
        self.delay = delay

    def get_scan_occurrences(self, occurrence_id):
        self.clock.now += self.delay
        return super().get_scan_occurrences(occurrence_id)


def test_deadline_checked_after_successful_call(config, clock):
    template = happy_client()
    client = SlowLinkingClient(clock, 2 * 3600)
    client.scripts = template.scripts
    outcome = review(make(client, config, clock), wait_hours=1, fail_on_policy=False)
    assert outcome.timed_out
    assert outcome.success is False
    assert outcome.record.is_empty
    assert outcome.failure.phase is Phase.AWAIT_LINKING
    assert client.count("get_build_info") == 0


def test_unexpected_errors_do_not_escape(config, clock):
    client = happy_client()
    client.scripts["get_scan_occurrences"] = [RuntimeError("socket closed")]
    outcome = review(make(client, config, clock))
    assert outcome.success is False
    assert isinstance(outcome.failure.cause, RuntimeError)


def test_debug_logs_version(clock, caplog):
    config = ReviewConfig(api_id="id", api_key="secret", debug=True)
    with caplog.at_level(logging.INFO):
        review(make(happy_client(), config, clock, version_provider=DummyVersion()))
    assert "Version: 9.9.9" in caplog.text
    assert "Finished: Review Dynamic Analysis Results" in caplog.text


def test_record_uses_build_history(config, clock):
    history = InMemoryBuildHistory()
    history.add_build(1)
    first = review(make(happy_client(), config, clock, history=history), build=1).record
    history.attach_record(1, first)
    history.add_build(2)
    second = review(make(happy_client(occurrence_id="occ-3"), config, clock, history=history), prior="occ-2", build=2).record
    assert second.total_net_change == 0
    assert len(second.trend) == 2
