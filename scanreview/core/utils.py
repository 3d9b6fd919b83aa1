from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path


class ReviewError(RuntimeError):
    pass


class InvalidInputError(ReviewError):
    pass


class ApiError(ReviewError):
    """Remote call failure carrying the HTTP status code (0 when unknown)."""

    TRANSIENT_CODES = (500, 504)

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.status_code in self.TRANSIENT_CODES


class TransientServiceError(ReviewError):
    pass


class TerminalAnalysisFailure(ReviewError):
    def __init__(self, status: str):
        super().__init__(f"The dynamic analysis failed to complete with status: {status}")
        self.status = status


class AmbiguousLinkError(ReviewError):
    pass


class UnlinkedApplicationError(ReviewError):
    pass


class ReviewTimeoutError(ReviewError):
    def __init__(self, phase: str):
        super().__init__(f"Timeout waiting in phase {phase}")
        self.phase = phase


class MalformedReportError(ReviewError):
    pass


class ReviewInterrupted(ReviewError):
    pass


def now_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def write_json(path: Path, data: dict) -> None:
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def read_json(path: Path) -> dict | None:
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
