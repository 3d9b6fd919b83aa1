from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from scanreview.core.models import ScanRecord
from scanreview.core.utils import ReviewError, ensure_dir, read_json, write_json

LOGGER = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parents[2]
RUNS_DIR = Path(os.getenv("SCANREVIEW_RUNS_DIR", str(BASE_DIR / "runs")))

BUILD_PREFIX = "build-"
RECORD_FILE = "record.json"
PROPERTIES_FILE = "review.properties.json"


class ReviewProperties(BaseModel):
    """State handed from the resubmit step to the review step of the same build."""

    model_config = ConfigDict(populate_by_name=True)

    analysis_name: str = Field("", alias="analysisName")
    previous_occurrence_id: str | None = Field(None, alias="previousOccurrenceId")


def _root(runs_dir: Path | None) -> Path:
    return runs_dir if runs_dir is not None else RUNS_DIR


def get_build_dir(build_number: int, runs_dir: Path | None = None) -> Path:
    return _root(runs_dir) / f"{BUILD_PREFIX}{build_number}"


def list_build_numbers(runs_dir: Path | None = None) -> list[int]:
    root = _root(runs_dir)
    ensure_dir(root)
    numbers = []
    for d in root.iterdir():
        if not d.is_dir() or not d.name.startswith(BUILD_PREFIX):
            continue
        suffix = d.name[len(BUILD_PREFIX):]
        if suffix.isdigit():
            numbers.append(int(suffix))
    return sorted(numbers)


def create_build(runs_dir: Path | None = None) -> int:
    numbers = list_build_numbers(runs_dir)
    build_number = numbers[-1] + 1 if numbers else 1
    ensure_dir(get_build_dir(build_number, runs_dir))
    LOGGER.debug("Created build %s", build_number)
    return build_number


def store_record(build_number: int, record: ScanRecord, runs_dir: Path | None = None) -> None:
    build_dir = get_build_dir(build_number, runs_dir)
    ensure_dir(build_dir)
    path = build_dir / RECORD_FILE
    if path.exists():
        raise ReviewError(f"Build {build_number} already has a review record")
    write_json(path, record.model_dump(mode="json"))


def load_record(build_number: int, runs_dir: Path | None = None) -> ScanRecord | None:
    data = read_json(get_build_dir(build_number, runs_dir) / RECORD_FILE)
    if data is None:
        return None
    return ScanRecord.model_validate(data)


def list_builds(runs_dir: Path | None = None) -> list[dict]:
    items = []
    for number in reversed(list_build_numbers(runs_dir)):
        record = load_record(number, runs_dir)
        items.append({
            "build": number,
            "reviewed": record is not None,
            "available": bool(record and record.available),
            "policy_compliance_status": record.policy_compliance_status if record else None,
            "total_count": record.total_count if record else None,
        })
    return items


def store_review_properties(build_number: int, props: ReviewProperties, runs_dir: Path | None = None) -> None:
    build_dir = get_build_dir(build_number, runs_dir)
    ensure_dir(build_dir)
    write_json(build_dir / PROPERTIES_FILE, props.model_dump(by_alias=True, exclude_none=True))


def load_review_properties(build_number: int, runs_dir: Path | None = None) -> ReviewProperties | None:
    data = read_json(get_build_dir(build_number, runs_dir) / PROPERTIES_FILE)
    if data is None:
        return None
    return ReviewProperties.model_validate(data)


def clear_review_properties(build_number: int, runs_dir: Path | None = None) -> None:
    path = get_build_dir(build_number, runs_dir) / PROPERTIES_FILE
    if path.exists():
        path.unlink()


class FileBuildHistory:
    """Build history over the numbered build directories of a runs folder."""

    def __init__(self, runs_dir: Path | None = None):
        self.runs_dir = runs_dir

    def get_previous_build(self, build_ref: int) -> Optional[int]:
        earlier = [n for n in list_build_numbers(self.runs_dir) if n < build_ref]
        return earlier[-1] if earlier else None

    def get_scan_record(self, build_ref: int) -> Optional[ScanRecord]:
        return load_record(build_ref, self.runs_dir)

    def attach_record(self, build_ref: int, record: ScanRecord) -> None:
        store_record(build_ref, record, self.runs_dir)
