import pytest

from issueloop.db import agent_id_for
from issueloop.queue import STREAM_EVAL, STREAM_EXEC, STREAM_PLAN, JobPayload, stream_for_stage


def test_payload_serializes_to_strings() -> None:
    payload = JobPayload(owner="Acme", repo="API", issue_number=42, stage="plan", installation_id=7)
    data = payload.to_dict()

    assert data == {
        "schema_version": "1.0",
        "stage": "plan",
        "owner": "Acme",
        "repo": "API",
        "issue_number": "42",
        "retry_count": "0",
        "installation_id": "7",
    }
    assert JobPayload.from_dict(data) == payload


def test_payload_from_stream_fields_uses_defaults() -> None:
    payload = JobPayload.from_dict({"owner": "acme", "repo": "api", "issue_number": "3", "installation_id": ""})
    assert payload.stage == "exec"
    assert payload.installation_id is None
    assert payload.retry_count == 0


def test_agent_id_matches_database_ids() -> None:
    payload = JobPayload(owner="Acme", repo="API", issue_number=42)
    assert payload.agent_id == "acme_api_42"
    assert payload.agent_id == agent_id_for("Acme", "API", 42)


def test_stream_for_stage() -> None:
    assert stream_for_stage("plan") == STREAM_PLAN
    assert stream_for_stage("exec") == STREAM_EXEC
    assert stream_for_stage("eval") == STREAM_EVAL
    with pytest.raises(ValueError):
        stream_for_stage("deploy")
