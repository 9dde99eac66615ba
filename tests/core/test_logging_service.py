"""
Test cases for structured logging
"""

import json

from hems.core.services.logging import get_logging_service


def _records(test_log_dir, name):
    lines = (test_log_dir / name).read_text().splitlines()
    return [json.loads(line) for line in lines if line.startswith("{")]


def test_auth_failures_reach_error_log(test_log_dir):
    logging_service = get_logging_service()

    logging_service.log_auth_event("phase1", user_id=1, success=True)
    logging_service.log_auth_event("phase1", user_id=2, success=False, error_kind="incorrect_password")

    main = _records(test_log_dir, "hems.log")
    errors = _records(test_log_dir, "errors.log")
    assert [r["event"] for r in main if r.get("event_type") == "auth.phase1"] == ["auth.phase1", "auth.phase1"]
    assert [r["user_id"] for r in errors if r.get("event_type") == "auth.phase1"] == [2]


def test_credentials_are_scrubbed(test_log_dir):
    get_logging_service().log_error("storage", "insert failed password=HU1218")

    content = (test_log_dir / "hems.log").read_text()
    assert "HU1218" not in content
    assert "error.storage" in content
