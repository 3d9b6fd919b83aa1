from __future__ import annotations

import logging
from pathlib import Path

from scanreview.core import config as config_mod
from scanreview.core import storage
from scanreview.core.client import AnalysisServiceClient
from scanreview.core.config import ReviewConfig
from scanreview.core.utils import ReviewError, is_blank

LOGGER = logging.getLogger(__name__)

RESUBMIT_ACTION_NAME = "Resubmit Dynamic Analysis"


def resubmit_dynamic_analysis(
    client: AnalysisServiceClient,
    config: ReviewConfig,
    analysis_name: str,
    max_duration_hours: int,
    fail_build_on_scan_failure: bool,
    build_number: int,
    runs_dir: Path | None = None,
) -> bool:
    """Schedule the named analysis to run now and record what the review step needs.

    Returns True when the analysis was resubmitted; otherwise the build passes
    only if ``fail_build_on_scan_failure`` is off.
    """
    LOGGER.info("Starting: %s", RESUBMIT_ACTION_NAME)
    storage.clear_review_properties(build_number, runs_dir)
    try:
        config_mod.validate_resubmit_inputs(config, analysis_name, max_duration_hours)
        LOGGER.info(
            "Dynamic Analysis name: %s, maximum duration (in hours): %s, use proxy: %s",
            analysis_name, max_duration_hours, config.proxy is not None,
        )

        analysis = client.get_analysis_by_name(analysis_name)
        if analysis is None or is_blank(analysis.analysis_id):
            raise ReviewError(f"Could not find dynamic analysis with name: {analysis_name}")

        props = storage.ReviewProperties(analysis_name=analysis_name)
        if not is_blank(analysis.occurrence_id):
            props.previous_occurrence_id = analysis.occurrence_id
            LOGGER.info("Previous analysis occurrence id: %s", analysis.occurrence_id)

        client.resubmit_analysis_by_id(analysis.analysis_id, max_duration_hours)
        storage.store_review_properties(build_number, props, runs_dir)
    except ReviewError as exc:
        LOGGER.error("Dynamic analysis was not resubmitted: %s", exc)
        return not fail_build_on_scan_failure

    LOGGER.info("Dynamic Analysis '%s' submitted.", analysis_name)
    LOGGER.info("Finished: %s", RESUBMIT_ACTION_NAME)
    return True
