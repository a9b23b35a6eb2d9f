import json
from pathlib import Path

import pytest

from issueloop.config import SecurityPolicy
from issueloop import security_scan
from issueloop.security_scan import SemgrepScanner, parse_semgrep_output

SEMGREP_JSON = json.dumps(
    {
        "results": [
            {
                "check_id": "python.lang.security.sqlalchemy-raw-sql",
                "path": "/work/acme_api_1/src/db.py",
                "start": {"line": 12},
                "extra": {"severity": "ERROR", "message": "Raw SQL"},
            },
            {
                "check_id": "generic.secrets.hardcoded-token",
                "path": "src/settings.py",
                "start": {"line": 3},
                "extra": {"severity": "WARNING"},
            },
            {
                "check_id": "custom.rule",
                "path": "src/x.py",
                "extra": {"severity": "SOMETHING"},
            },
        ],
        "errors": [],
    }
)


def test_parse_maps_severity_and_strips_workspace() -> None:
    findings = parse_semgrep_output(SEMGREP_JSON, workspace=Path("/work/acme_api_1"))

    assert [f.severity for f in findings] == ["high", "medium", "medium"]
    assert findings[0].path == "src/db.py"
    assert findings[0].line == 12
    assert findings[0].category == "sql-injection"
    assert findings[1].category == "secrets"
    assert findings[1].message == "generic.secrets.hardcoded-token"
    assert findings[2].line is None


def test_parse_empty_output() -> None:
    assert parse_semgrep_output("") == []
    assert parse_semgrep_output('{"results": []}') == []


@pytest.mark.asyncio
async def test_disabled_scanner_reports_nothing(tmp_path: Path) -> None:
    scanner = SemgrepScanner(tmp_path, SecurityPolicy(semgrep_enabled=False))
    assert await scanner.scan(["src/app.py"]) == []
    assert await SemgrepScanner(tmp_path).scan([]) == []


@pytest.mark.asyncio
async def test_scan_runs_in_given_root_and_skips_missing_paths(tmp_path: Path, monkeypatch) -> None:
    checkout = tmp_path / "checkout"
    staged = tmp_path / "staged"
    (staged / "src").mkdir(parents=True)
    (staged / "src" / "report.py").write_text("print('hi')\n")
    calls: list[tuple[list[str], Path]] = []
    output = json.dumps(
        {"results": [{"check_id": "custom.rule", "path": f"{staged}/src/report.py", "extra": {}}]}
    )

    def fake_run(cmd, cwd, timeout, input_text=None):
        calls.append((cmd, cwd))
        return 1, output, ""

    monkeypatch.setattr(security_scan, "run_command", fake_run)
    scanner = SemgrepScanner(checkout)

    findings = await scanner.scan(["src/report.py", "src/missing.py"], staged)

    [(cmd, cwd)] = calls
    assert cwd == staged
    assert cmd[-1] == "src/report.py"
    assert "src/missing.py" not in cmd
    assert [f.path for f in findings] == ["src/report.py"]
    assert await scanner.scan(["src/missing.py"], staged) == []
    assert len(calls) == 1
