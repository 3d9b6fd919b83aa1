from __future__ import annotations

import logging

from fastapi import FastAPI, BackgroundTasks, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from scanreview.core import storage
from scanreview.core.client import RestAnalysisClient
from scanreview.core.config import ReviewConfig
from scanreview.core.orchestrator import PollingOrchestrator, review_build
from scanreview.core.utils import ReviewError
from scanreview.reporting.summary import trend_series

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="scanreview API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


class ReviewRequest(BaseModel):
    build: int | None = None
    wait_hours: int = 1
    fail_on_policy_violation: bool = True


def make_orchestrator() -> PollingOrchestrator:
    config = ReviewConfig.from_env()
    return PollingOrchestrator(RestAnalysisClient(config), storage.FileBuildHistory(), config=config)


def _run_review(build: int, wait_hours: int, fail_on_policy_violation: bool) -> None:
    try:
        outcome = review_build(make_orchestrator(), build, wait_hours, fail_on_policy_violation)
    except ReviewError as exc:
        LOGGER.error("Review of build %s failed: %s", build, exc)
        return
    LOGGER.info("Review of build %s finished, success=%s", build, outcome.success)


def _load(build: int):
    record = storage.load_record(build)
    if record is None:
        raise HTTPException(status_code=404, detail="Build record not found")
    return record


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/builds")
def list_builds():
    return storage.list_builds()


@app.get("/api/builds/{build}")
def get_build(build: int):
    return _load(build).model_dump(mode="json")


@app.get("/api/builds/{build}/trend")
def get_trend(build: int):
    return {"build": build, "series": trend_series(_load(build))}


@app.post("/api/review")
def review(req: ReviewRequest, background_tasks: BackgroundTasks):
    build = req.build
    if build is None:
        numbers = storage.list_build_numbers()
        if not numbers:
            raise HTTPException(status_code=404, detail="No builds found")
        build = numbers[-1]
    elif build not in storage.list_build_numbers():
        raise HTTPException(status_code=404, detail="Build not found")
    if storage.load_record(build) is not None:
        raise HTTPException(status_code=409, detail="Build already reviewed")

    background_tasks.add_task(_run_review, build, req.wait_hours, req.fail_on_policy_violation)
    return {"build": build, "status": "started"}
