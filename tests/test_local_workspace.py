"""Tests for auditing a local checkout."""
import asyncio

import pytest
from org_compliance.infrastructure.local_workspace import LocalWorkspace, parse_remote_url
from org_compliance.domain.models import RepositoryIdentity


@pytest.mark.parametrize("url", [
    "https://github.com/acme/widgets.git",
    "https://github.com/acme/widgets",
    "git@github.com:acme/widgets.git",
    "ssh://git@github.com/acme/widgets.git",
])
def test_parse_remote_url(url):
    """Test https and ssh remote formats."""
    assert parse_remote_url(url) == RepositoryIdentity("acme", "widgets")


def test_identity_from_git_remote(tmp_path):
    """The origin remote names the repository."""
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text(
        '[core]\n\tbare = false\n[remote "origin"]\n'
        '\turl = git@github.com:acme/widgets.git\n\tfetch = +refs/heads/*:refs/remotes/origin/*\n'
    )

    repositories = asyncio.run(LocalWorkspace(str(tmp_path)).discover_repositories("ignored"))

    assert repositories == [RepositoryIdentity("acme", "widgets")]


def test_identity_falls_back_to_directory_name(tmp_path):
    """Without a remote the directory name is used."""
    workspace = tmp_path / "gadgets"
    workspace.mkdir()

    assert LocalWorkspace(str(workspace)).identity() == RepositoryIdentity("local", "gadgets")


def test_signals_read_from_files(tmp_path):
    """Community files, workflows and package metadata become signals."""
    (tmp_path / "README.md").write_text("# Widgets")
    (tmp_path / "LICENSE").write_text("MIT")
    (tmp_path / ".github" / "workflows").mkdir(parents=True)
    (tmp_path / ".github" / "workflows" / "ci.yml").write_text("on: push")
    (tmp_path / ".github" / "SECURITY.md").write_text("report here")
    (tmp_path / ".github" / "dependabot.yml").write_text("version: 2")
    (tmp_path / "package.json").write_text(
        '{"description": "Widget dashboard", "keywords": ["react"]}'
    )
    workspace = LocalWorkspace(str(tmp_path))

    signals = asyncio.run(workspace.fetch_repository_signals(workspace.identity()))

    assert signals.has_readme and signals.has_license
    assert signals.has_security_policy and signals.has_dependabot
    assert not signals.has_contributing
    assert not signals.has_code_of_conduct
    assert signals.workflow_files == ("ci.yml",)
    assert signals.branch_protection_rules is None
    assert signals.description == "Widget dashboard"
    assert signals.keywords == ("react",)


def test_readme_under_github_directory(tmp_path):
    """A lower-case readme in .github counts, as it does on GitHub."""
    (tmp_path / ".github").mkdir()
    (tmp_path / ".github" / "readme.md").write_text("# Widgets")
    workspace = LocalWorkspace(str(tmp_path))

    signals = asyncio.run(workspace.fetch_repository_signals(workspace.identity()))

    assert signals.has_readme
