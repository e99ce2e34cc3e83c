from __future__ import annotations

from pathlib import Path

import pytest

from ticketmerge.config import AppConfig, ConfigError, JiraFieldMap, load_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


_MINIMAL = """
[jira]
base_url = "https://example.atlassian.net/"
email = "bot@example.com"

[github]
allowed_orgs = ["acme"]
"""


def test_load_config_minimal_applies_defaults(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path / "ticketmerge.toml", _MINIMAL))

    assert isinstance(cfg, AppConfig)
    assert cfg.runtime.poll_interval_seconds == 30
    assert cfg.runtime.monitor_interval_seconds == 10
    assert cfg.runtime.max_ticket_attempts == 3
    assert cfg.runtime.reconcile_on_startup is True
    assert cfg.jira.base_url == "https://example.atlassian.net"
    assert cfg.jira.api_token_env == "JIRA_API_TOKEN"
    assert cfg.jira.project_keys == ()
    assert cfg.jira.fields == JiraFieldMap()
    assert cfg.github.allowed_orgs == ("acme",)
    assert cfg.github.default_repo is None
    assert cfg.workflow.queue_status == "To Do"
    assert cfg.workflow.post_pr_status == "In Review"
    assert cfg.workflow.attention_status == "Needs Attention"
    assert cfg.workflow.default_deploy_target == "azure-webapp"
    assert cfg.advisor.enabled is False
    assert cfg.delegation.enabled is True
    assert cfg.delegation.mention == "@copilot"
    assert cfg.projects == ()


def test_load_config_full_file(tmp_path: Path) -> None:
    cfg = load_config(
        _write(
            tmp_path / "ticketmerge.toml",
            """
[runtime]
poll_interval_seconds = 60
monitor_interval_seconds = 5
max_ticket_attempts = 2
reconcile_max_pages = 2
reconcile_on_startup = false
history_limit = 10

[jira]
base_url = "https://example.atlassian.net"
email = "bot@example.com"
api_token_env = "TICKETS_TOKEN"
project_keys = ["abc", "XYZ", "abc"]
fallback_project_keys = ["ops"]
project_cache_ttl_seconds = 60
max_results = 25
request_timeout_seconds = 10

[jira.fields]
repo = "customfield_10001"
files = "customfield_10009"

[github]
allowed_orgs = ["acme", "Widgets"]
default_repo = "acme/service"
command_timeout_seconds = 30

[workflow]
post_pr_status = "Code Review"
attention_status = "Blocked"
default_deploy_target = "docker"

[projects.abc]
post_pr_status = "Review"
default_repo = "acme/abc-api"

[advisor]
enabled = true
model = "gpt-5"
extra_args = ["--full-auto"]
timeout_seconds = 120

[delegation]
mention = "@helper"
""",
        )
    )

    assert cfg.runtime.poll_interval_seconds == 60
    assert cfg.runtime.reconcile_on_startup is False
    assert cfg.jira.project_keys == ("ABC", "XYZ")
    assert cfg.jira.fallback_project_keys == ("OPS",)
    assert cfg.jira.fields.repo == "customfield_10001"
    assert cfg.jira.fields.language == "customfield_language"
    assert cfg.jira.fields.files == "customfield_10009"
    assert cfg.github.allows_owner("widgets")
    assert not cfg.github.allows_owner("other")
    assert not cfg.github.allows_owner("")
    assert cfg.advisor.extra_args == ("--full-auto",)
    assert cfg.delegation.mention == "@helper"

    assert cfg.post_pr_status_for("ABC") == "Review"
    assert cfg.post_pr_status_for("XYZ") == "Code Review"
    assert cfg.default_repo_for("ABC") == "acme/abc-api"
    assert cfg.default_repo_for("XYZ") == "acme/service"


@pytest.mark.parametrize(
    ("extra", "message"),
    [
        ("[runtime]\npoll_interval_seconds = 1\n", "poll_interval_seconds must be >= 5"),
        ("[runtime]\nmonitor_interval_seconds = 0\n", "monitor_interval_seconds must be >= 1"),
        ("[runtime]\nmax_ticket_attempts = 0\n", "max_ticket_attempts must be >= 1"),
        ("[runtime]\nreconcile_on_startup = 1\n", "reconcile_on_startup must be a boolean"),
        ("[advisor]\ntimeout_seconds = 0\n", "advisor.timeout_seconds must be >= 1"),
        ("[projects.ABC]\ndefault_repo = \"no-slash\"\n", "owner/name form"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, extra: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path / "ticketmerge.toml", _MINIMAL + extra))


def test_load_config_requires_jira_and_allowed_orgs(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match=r"\[jira\] is required"):
        load_config(_write(tmp_path / "a.toml", "[github]\nallowed_orgs = [\"acme\"]\n"))

    with pytest.raises(ConfigError, match="allowed_orgs is required"):
        load_config(
            _write(
                tmp_path / "b.toml",
                '[jira]\nbase_url = "https://x"\nemail = "e"\n[github]\nallowed_orgs = []\n',
            )
        )


def test_load_config_rejects_out_of_range_max_results(tmp_path: Path) -> None:
    content = _MINIMAL.replace('email = "bot@example.com"', 'email = "bot@example.com"\nmax_results = 500')
    with pytest.raises(ConfigError, match="max_results must be between 1 and 100"):
        load_config(_write(tmp_path / "ticketmerge.toml", content))


def test_api_token_reads_named_environment_variable(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    cfg = load_config(_write(tmp_path / "ticketmerge.toml", _MINIMAL))

    monkeypatch.delenv("JIRA_API_TOKEN", raising=False)
    with pytest.raises(ConfigError, match="JIRA_API_TOKEN"):
        cfg.jira.api_token()

    monkeypatch.setenv("JIRA_API_TOKEN", "tok")
    assert cfg.jira.api_token() == "tok"
