from issueloop.risk import (
    Conflict,
    ConflictType,
    RiskFactor,
    RiskLevel,
    Severity,
    aggregate_risk_level,
    clamp,
    has_high_severity,
)


def _factor(severity: float) -> RiskFactor:
    return RiskFactor(type="technical", description="d", severity=severity, likelihood=0.5, impact="i")


def test_aggregate_risk_level_thresholds() -> None:
    assert aggregate_risk_level([]) == RiskLevel.LOW
    assert aggregate_risk_level([_factor(3)]) == RiskLevel.LOW
    assert aggregate_risk_level([_factor(4)]) == RiskLevel.MEDIUM
    assert aggregate_risk_level([_factor(6), _factor(6)]) == RiskLevel.HIGH
    assert aggregate_risk_level([_factor(2), _factor(8)]) == RiskLevel.CRITICAL


def test_risk_level_rank_is_ordered() -> None:
    ranks = [level.rank for level in (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)]
    assert ranks == sorted(ranks)


def test_conflict_dict_round_trip() -> None:
    conflict = Conflict(
        type=ConflictType.FILE_OVERLAP,
        severity=Severity.MEDIUM,
        description="overlap",
        affected_files=["a.py"],
        conflicting_agent_ids=["acme_api_2"],
    )
    assert Conflict.from_dict(conflict.to_dict()) == conflict
    assert not has_high_severity([conflict])


def test_clamp() -> None:
    assert clamp(1.5, 0, 1) == 1
    assert clamp(-0.2, 0, 1) == 0
    assert clamp(0.4, 0, 1) == 0.4
