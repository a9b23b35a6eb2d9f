import pytest

from conftest import create_agent, make_diff
from issueloop import db
from issueloop.collaborators import SecurityFinding
from issueloop.config import DiffPolicy, SecurityPolicy
from issueloop.validation import PatchValidationGate


def _finding(severity: str, rule: str = "rule") -> SecurityFinding:
    return SecurityFinding(rule_id=rule, severity=severity, path="src/app.py")


def test_small_patch_passes() -> None:
    result = PatchValidationGate().validate(make_diff(["src/app.py"]))
    assert result.ok
    assert result.reasons == []
    assert result.file_stats[0]["path"] == "src/app.py"


def test_oversized_diff_is_rejected() -> None:
    gate = PatchValidationGate(DiffPolicy(max_bytes=100))
    result = gate.validate(make_diff(["src/app.py"], added=20))
    assert not result.ok
    assert any("exceeds limit of 100 bytes" in r for r in result.reasons)


def test_delete_heavy_patch_is_rejected_unless_low_risk() -> None:
    gate = PatchValidationGate()
    diff = make_diff(["src/app.py"], added=1, deleted=9)

    rejected = gate.validate(diff)
    assert not rejected.ok
    assert any("Deletion ratio 0.90" in r for r in rejected.reasons)

    assert gate.validate(diff, low_risk=True).ok


def test_too_many_files() -> None:
    gate = PatchValidationGate(DiffPolicy(max_total_files_per_iter=2))
    result = gate.validate(make_diff(["a.py", "b.py", "c.py"]))
    assert not result.ok
    assert "Patch touches 3 files, limit is 2" in result.reasons


def test_unparseable_diff_falls_back_to_affected_files() -> None:
    gate = PatchValidationGate(DiffPolicy(max_total_files_per_iter=1))
    result = gate.validate("not a diff at all", affected_files=["a.py", "b.py"])
    assert not result.ok


def test_large_file_requires_secondary_review_but_passes() -> None:
    gate = PatchValidationGate(DiffPolicy(large_file_line_threshold=100))
    result = gate.validate(make_diff(["src/big.py"]), post_change_line_counts={"src/big.py": 1500})
    assert result.ok
    assert result.requires_secondary_review
    assert any("Large file src/big.py" in r for r in result.reasons)


def test_critical_finding_blocks() -> None:
    result = PatchValidationGate().validate(make_diff(["src/app.py"]), findings=[_finding("critical", "sqli")])
    assert not result.ok
    assert any("critical security finding" in r and "sqli" in r for r in result.reasons)


def test_high_findings_block_only_above_tolerance() -> None:
    gate = PatchValidationGate(security_policy=SecurityPolicy(max_high_severity_issues=2))
    diff = make_diff(["src/app.py"])

    tolerated = gate.validate(diff, findings=[_finding("high"), _finding("high")])
    assert tolerated.ok
    assert len(tolerated.security_warnings) == 2

    blocked = gate.validate(diff, findings=[_finding("high")] * 3)
    assert not blocked.ok


def test_validation_is_deterministic() -> None:
    gate = PatchValidationGate()
    diff = make_diff(["a.py", "b.py"], added=3, deleted=2)
    assert gate.validate(diff) == gate.validate(diff)


@pytest.mark.asyncio
async def test_check_records_one_attempt(database) -> None:
    agent = await create_agent()
    gate = PatchValidationGate(DiffPolicy(max_bytes=10))

    async with db.get_session() as session:
        result, attempt = await gate.check(
            session, agent, 1, make_diff(["src/app.py"]), task_keys=["T1"]
        )

    assert not result.ok
    async with db.get_session() as session:
        attempts = await db.list_patch_attempts(session, agent.id)
        assert [a.id for a in attempts] == [attempt.id]
        assert attempts[0].validation_ok is False
        assert attempts[0].task_keys == ["T1"]
        with pytest.raises(ValueError):
            await db.mark_patch_applied(session, attempts[0], "abc")
