"""Tests for the command line entry point in local mode."""
import json
from unittest import mock

import psycopg2
import pytest
from org_compliance.cli import main


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A checkout with a README and no token in the environment."""
    for name in ("GITHUB_TOKEN", "AGENT_ORG_TOKEN", "GITHUB_ACTIONS", "GITHUB_ORG",
                 "GITHUB_REPOSITORY_OWNER", "HISTORY_BACKEND", "HISTORY_DIR"):
        monkeypatch.delenv(name, raising=False)
    repo = tmp_path / "widgets"
    repo.mkdir()
    (repo / "README.md").write_text("# Widgets")
    monkeypatch.chdir(repo)
    return repo


def test_local_audit_prints_json(workspace, capsys):
    """Without a token the current checkout is audited."""
    exit_code = main(["--local", "--json", "--prioritize", "--compliance-report"])

    output = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert output["organization"] == "local"
    assert [r["repository"] for r in output["results"]] == ["local/widgets"]
    assert output["priorities"]["total_items"] > 0
    assert output["compliance_report"]["totalRepositories"] == 1
    assert (workspace / ".health-history").is_dir()


def test_no_save_history(workspace, capsys):
    """--no-save-history leaves no snapshot behind."""
    assert main(["--local", "--json", "--no-save-history"]) == 0
    assert not (workspace / ".health-history").exists()


def test_remote_only_action_without_token_fails(workspace):
    """Issue reconciliation needs a token."""
    assert main(["--local", "--reconcile-issue"]) == 1


def test_auto_fix_dry_run_in_local_mode(workspace, capsys):
    """A dry run lists the files it would generate."""
    exit_code = main(["--local", "--auto-fix", "--dry-run", "--json"])

    output = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert output["auto_fix"][0]["files"]["SECURITY.md"] == "would-generate"
    assert "README.md" not in output["auto_fix"][0]["files"]


def test_unreachable_database_still_returns_batch(workspace, capsys, monkeypatch):
    """A history backend that cannot connect only stops trends and saving."""
    monkeypatch.setenv("HISTORY_BACKEND", "postgres")
    monkeypatch.setattr(
        "org_compliance.infrastructure.postgres_history_store.psycopg2.connect",
        mock.Mock(side_effect=psycopg2.OperationalError("Connection refused"))
    )

    exit_code = main(["--local", "--json", "--trending"])

    output = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert [r["repository"] for r in output["results"]] == ["local/widgets"]
    assert "Connection refused" in output["stage_errors"]["history"]
    assert "Connection refused" in output["stage_errors"]["trends"]
    assert "snapshot" not in output


def test_remote_client_closed_when_discovery_fails(workspace, monkeypatch):
    """The GitHub session is closed even when the run aborts."""
    client = mock.Mock(rate_limit_remaining=None)
    client.discover_repositories = mock.AsyncMock(side_effect=RuntimeError("boom"))
    client.close = mock.AsyncMock()
    monkeypatch.setattr("org_compliance.cli.GitHubGraphQLClient", mock.Mock(return_value=client))
    monkeypatch.setenv("GITHUB_TOKEN", "token")

    assert main(["--org", "acme", "--no-save-history"]) == 1
    client.close.assert_awaited()


def test_remote_client_closed_without_organization(workspace, monkeypatch):
    """A missing organization exits 1 after closing the client."""
    client = mock.Mock()
    client.close = mock.AsyncMock()
    monkeypatch.setattr("org_compliance.cli.GitHubGraphQLClient", mock.Mock(return_value=client))
    monkeypatch.setenv("GITHUB_TOKEN", "token")

    assert main([]) == 1
    client.close.assert_awaited_once()
