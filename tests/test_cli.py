from click.testing import CliRunner

from issueloop import cli
from issueloop.queue import JobPayload


def test_enqueue_builds_payload(monkeypatch) -> None:
    sent: list[JobPayload] = []

    async def fake_enqueue(payload: JobPayload) -> str:
        sent.append(payload)
        return "42-0"

    monkeypatch.setattr(cli, "enqueue_job", fake_enqueue)
    result = CliRunner().invoke(cli.main, ["enqueue", "acme", "api", "7", "--stage", "exec", "--title", "Fix it"])

    assert result.exit_code == 0, result.output
    assert "acme_api_7" in result.output
    assert sent == [JobPayload(owner="acme", repo="api", issue_number=7, stage="exec", issue_title="Fix it")]


def test_enqueue_rejects_unknown_stage() -> None:
    result = CliRunner().invoke(cli.main, ["enqueue", "acme", "api", "7", "--stage", "deploy"])
    assert result.exit_code == 2
