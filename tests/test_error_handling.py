"""Data-driven tests for error handling functionality."""
import logging

import pytest

from jobcatalog.error_handling import (
    DuplicateRaceError,
    ErrorHandler,
    InvalidTransitionError,
    PipelineError,
    ScoringTimeoutError,
    StoreError,
    ValidationError,
)

# Test data for different types of errors
error_scenarios = [
    {
        'name': "validation",
        'stage': "normalize",
        'error': ValidationError("REMOTEOK", "1", missing=["title"]),
        'expected_log_level': "WARNING",
        'expected_text': "Rejected posting REMOTEOK/1",
    },
    {
        'name': "scoring_timeout",
        'stage': "score",
        'error': ScoringTimeoutError("INDEED_1", 0.3),
        'expected_log_level': "WARNING",
        'expected_text': "exceeded 300ms",
    },
    {
        'name': "store_failure",
        'stage': "dedup",
        'error': StoreError("upsert failed"),
        'expected_log_level': "ERROR",
        'expected_text': "dedup failed for",
    },
    {
        'name': "generic_exception",
        'stage': "normalize",
        'error': Exception("Unknown error occurred"),
        'expected_log_level': "ERROR",
        'expected_text': "Exception: Unknown error occurred",
    },
]


@pytest.mark.parametrize("scenario", error_scenarios, ids=[s['name'] for s in error_scenarios])
def test_record_logs_by_error_type(error_handler, caplog, scenario):
    """Test that each error type is counted and logged at the right level."""
    with caplog.at_level(logging.DEBUG, logger="jobcatalog.error_handling"):
        error_handler.record(scenario['stage'], "REMOTEOK", scenario['error'])

    assert error_handler.error_counts[f"{scenario['stage']}:REMOTEOK"] == 1
    records = [r for r in caplog.records if r.name == "jobcatalog.error_handling"]
    assert records[0].levelname == scenario['expected_log_level']
    assert scenario['expected_text'] in records[0].getMessage()


def test_threshold_notifies_once(error_handler, caplog):
    """Test that a critical line is emitted once the threshold is reached."""
    with caplog.at_level(logging.CRITICAL, logger="jobcatalog.error_handling"):
        for _ in range(5):
            error_handler.record("normalize", "THE_MUSE", ValueError("bad"))

    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert "normalize:THE_MUSE: 3 errors" in critical[0].getMessage()


def test_totals_by_stage(error_handler):
    error_handler.record("normalize", "REMOTEOK", ValueError("x"))
    error_handler.record("normalize", "REMOTIVE", ValueError("x"))
    error_handler.record("score", "INDEED_1", ValueError("x"))

    assert error_handler.total() == 3
    assert error_handler.total("normalize") == 2
    assert error_handler.total("lifecycle") == 0


def test_reset_clears_counts_and_notifications(error_handler, caplog):
    for _ in range(3):
        error_handler.record("score", "u1", ValueError("x"))
    error_handler.reset()
    assert error_handler.total() == 0

    with caplog.at_level(logging.CRITICAL, logger="jobcatalog.error_handling"):
        for _ in range(3):
            error_handler.record("score", "u1", ValueError("x"))
    assert any(r.levelno == logging.CRITICAL for r in caplog.records)


@pytest.mark.parametrize("error", [
    ValidationError("INDEED", "1", reason="payload is not a mapping"),
    DuplicateRaceError("a" * 64, "INDEED_2", "INDEED_1"),
    ScoringTimeoutError("INDEED_1", 0.3),
    InvalidTransitionError("INDEED_1", "EXPIRED", "ACTIVE"),
    StoreError("boom"),
])
def test_errors_share_base_class(error):
    assert isinstance(error, PipelineError)
    assert str(error)


def test_error_messages():
    assert "missing required fields: title, company" in str(
        ValidationError("INDEED", "1", missing=["title", "company"])
    )
    race = DuplicateRaceError("abcdef0123456789", "INDEED_2", "INDEED_1")
    assert "abcdef012345" in str(race)
    assert "INDEED_1" in str(race)
    assert "another ingest" in str(DuplicateRaceError("abc", "INDEED_2"))
