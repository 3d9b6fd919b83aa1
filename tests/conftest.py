from pathlib import Path

import pytest

from scanreview.core import storage
from scanreview.core.config import ReviewConfig
from scanreview.core.models import AnalysisInfo, OccurrenceStatus, ScanOccurrence

FIXTURES = Path(__file__).parent / "fixtures"


def read_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


class FakeClock:
    """Wall clock that only moves when the code under test sleeps."""

    def __init__(self, start: float = 1_709_802_300.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedClient:
    """Analysis service double answering each call from a script.

    Every script is a list of return values or exceptions consumed in order;
    the last entry keeps answering once the script runs out.
    """

    def __init__(self, analyses=None, occurrences=None, scan_occurrences=None, build_infos=None, reports=None):
        self.scripts = {
            "get_analysis_by_name": list(analyses or [None]),
            "get_latest_analysis_occurrence": list(occurrences or [None]),
            "get_scan_occurrences": list(scan_occurrences or [[]]),
            "get_build_info": list(build_infos or [""]),
            "get_detailed_report": list(reports or [""]),
        }
        self.calls = []
        self.resubmitted = []

    def _next(self, name, *args):
        self.calls.append((name, args))
        script = self.scripts[name]
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    def get_analysis_by_name(self, name):
        return self._next("get_analysis_by_name", name)

    def resubmit_analysis_by_id(self, analysis_id, max_duration_hours):
        self.resubmitted.append((analysis_id, max_duration_hours))

    def get_latest_analysis_occurrence(self, occurrence_id):
        return self._next("get_latest_analysis_occurrence", occurrence_id)

    def get_scan_occurrences(self, occurrence_id):
        return self._next("get_scan_occurrences", occurrence_id)

    def get_build_info(self, app_id, build_id):
        return self._next("get_build_info", app_id, build_id)

    def get_detailed_report(self, build_id):
        return self._next("get_detailed_report", build_id)


def happy_client(report: str = "detailed_report.xml", occurrence_id: str = "occ-2") -> ScriptedClient:
    return ScriptedClient(
        analyses=[AnalysisInfo(analysis_id="an-1", name="storefront", occurrence_id=occurrence_id)],
        occurrences=[OccurrenceStatus(occurrence_id=occurrence_id, status="FINISHED_RESULTS_AVAILABLE")],
        scan_occurrences=[[ScanOccurrence(linked_app_id="2002", linked_app_name="Storefront", linked_build_id="3003")]],
        build_infos=[read_fixture("build_info.xml")],
        reports=[read_fixture(report)],
    )


@pytest.fixture
def config():
    return ReviewConfig(api_id="id", api_key="secret")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runs_dir(tmp_path, monkeypatch):
    path = tmp_path / "runs"
    monkeypatch.setattr(storage, "RUNS_DIR", path)
    return path
