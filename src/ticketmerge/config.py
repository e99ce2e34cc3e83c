from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    poll_interval_seconds: int = 30
    monitor_interval_seconds: int = 10
    max_ticket_attempts: int = 3
    reconcile_max_pages: int = 4
    reconcile_on_startup: bool = True
    history_limit: int = 50


@dataclass(frozen=True)
class JiraFieldMap:
    repo: str = "customfield_repo"
    language: str = "customfield_language"
    build_command: str = "customfield_build"
    test_command: str = "customfield_test"
    deploy_target: str = "customfield_deploy"
    files: str = "customfield_files"

    def field_ids(self) -> tuple[str, ...]:
        return (
            self.repo,
            self.language,
            self.build_command,
            self.test_command,
            self.deploy_target,
            self.files,
        )


@dataclass(frozen=True)
class JiraConfig:
    base_url: str
    email: str
    api_token_env: str = "JIRA_API_TOKEN"
    project_keys: tuple[str, ...] = ()
    fallback_project_keys: tuple[str, ...] = ()
    project_cache_ttl_seconds: int = 3600
    max_results: int = 50
    request_timeout_seconds: int = 30
    fields: JiraFieldMap = JiraFieldMap()

    def api_token(self) -> str:
        token = os.environ.get(self.api_token_env, "")
        if not token:
            raise ConfigError(f"Environment variable {self.api_token_env} must hold the Jira API token")
        return token


@dataclass(frozen=True)
class GitHubConfig:
    allowed_orgs: tuple[str, ...]
    default_repo: str | None = None
    command_timeout_seconds: int = 60

    def allows_owner(self, owner: str) -> bool:
        normalized = owner.strip().lower()
        if not normalized:
            return False
        return normalized in {org.lower() for org in self.allowed_orgs}


@dataclass(frozen=True)
class WorkflowConfig:
    queue_status: str = "To Do"
    in_progress_status: str = "In Progress"
    post_pr_status: str = "In Review"
    done_status: str = "Done"
    attention_status: str = "Needs Attention"
    default_deploy_target: str = "azure-webapp"


@dataclass(frozen=True)
class ProjectConfig:
    project_key: str
    post_pr_status: str | None = None
    default_repo: str | None = None


@dataclass(frozen=True)
class AdvisorConfig:
    enabled: bool = False
    model: str | None = None
    sandbox: str | None = None
    profile: str | None = None
    extra_args: tuple[str, ...] = ()
    timeout_seconds: int = 300


@dataclass(frozen=True)
class DelegationConfig:
    enabled: bool = True
    mention: str = "@copilot"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    jira: JiraConfig
    github: GitHubConfig
    workflow: WorkflowConfig = WorkflowConfig()
    advisor: AdvisorConfig = AdvisorConfig()
    delegation: DelegationConfig = DelegationConfig()
    projects: tuple[ProjectConfig, ...] = ()

    def project(self, project_key: str) -> ProjectConfig | None:
        for project in self.projects:
            if project.project_key == project_key:
                return project
        return None

    def post_pr_status_for(self, project_key: str) -> str:
        project = self.project(project_key)
        if project is not None and project.post_pr_status:
            return project.post_pr_status
        return self.workflow.post_pr_status

    def default_repo_for(self, project_key: str) -> str | None:
        project = self.project(project_key)
        if project is not None and project.default_repo:
            return project.default_repo
        return self.github.default_repo


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    jira_data = _require_table(data, "jira")
    github_data = _require_table(data, "github")
    workflow_data = _optional_table(data, "workflow") or {}
    advisor_data = _optional_table(data, "advisor") or {}
    delegation_data = _optional_table(data, "delegation") or {}

    runtime = RuntimeConfig(
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 30),
        monitor_interval_seconds=_int_with_default(runtime_data, "monitor_interval_seconds", 10),
        max_ticket_attempts=_int_with_default(runtime_data, "max_ticket_attempts", 3),
        reconcile_max_pages=_int_with_default(runtime_data, "reconcile_max_pages", 4),
        reconcile_on_startup=_bool_with_default(runtime_data, "reconcile_on_startup", True),
        history_limit=_int_with_default(runtime_data, "history_limit", 50),
    )
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.monitor_interval_seconds < 1:
        raise ConfigError("runtime.monitor_interval_seconds must be >= 1")
    if runtime.max_ticket_attempts < 1:
        raise ConfigError("runtime.max_ticket_attempts must be >= 1")
    if runtime.reconcile_max_pages < 1:
        raise ConfigError("runtime.reconcile_max_pages must be >= 1")

    jira = JiraConfig(
        base_url=_require_str(jira_data, "base_url").rstrip("/"),
        email=_require_str(jira_data, "email"),
        api_token_env=_str_with_default(jira_data, "api_token_env", "JIRA_API_TOKEN"),
        project_keys=_project_keys(jira_data, "project_keys"),
        fallback_project_keys=_project_keys(jira_data, "fallback_project_keys"),
        project_cache_ttl_seconds=_int_with_default(jira_data, "project_cache_ttl_seconds", 3600),
        max_results=_int_with_default(jira_data, "max_results", 50),
        request_timeout_seconds=_int_with_default(jira_data, "request_timeout_seconds", 30),
        fields=_parse_field_map(_optional_table(jira_data, "fields") or {}),
    )
    if not 1 <= jira.max_results <= 100:
        raise ConfigError("jira.max_results must be between 1 and 100")

    allowed_orgs = _tuple_of_str(github_data, "allowed_orgs")
    if not allowed_orgs:
        raise ConfigError("github.allowed_orgs is required and must be a non-empty list of strings")
    github = GitHubConfig(
        allowed_orgs=allowed_orgs,
        default_repo=_optional_repo(github_data, "default_repo"),
        command_timeout_seconds=_int_with_default(github_data, "command_timeout_seconds", 60),
    )

    workflow = WorkflowConfig(
        queue_status=_str_with_default(workflow_data, "queue_status", "To Do"),
        in_progress_status=_str_with_default(workflow_data, "in_progress_status", "In Progress"),
        post_pr_status=_str_with_default(workflow_data, "post_pr_status", "In Review"),
        done_status=_str_with_default(workflow_data, "done_status", "Done"),
        attention_status=_str_with_default(workflow_data, "attention_status", "Needs Attention"),
        default_deploy_target=_str_with_default(
            workflow_data, "default_deploy_target", "azure-webapp"
        ),
    )

    advisor = AdvisorConfig(
        enabled=_bool_with_default(advisor_data, "enabled", False),
        model=_optional_str(advisor_data, "model"),
        sandbox=_optional_str(advisor_data, "sandbox"),
        profile=_optional_str(advisor_data, "profile"),
        extra_args=_tuple_of_str(advisor_data, "extra_args"),
        timeout_seconds=_int_with_default(advisor_data, "timeout_seconds", 300),
    )
    if advisor.timeout_seconds < 1:
        raise ConfigError("advisor.timeout_seconds must be >= 1")

    delegation = DelegationConfig(
        enabled=_bool_with_default(delegation_data, "enabled", True),
        mention=_str_with_default(delegation_data, "mention", "@copilot"),
    )

    return AppConfig(
        runtime=runtime,
        jira=jira,
        github=github,
        workflow=workflow,
        advisor=advisor,
        delegation=delegation,
        projects=_load_project_configs(_optional_table(data, "projects") or {}),
    )


def _parse_field_map(data: dict[str, object]) -> JiraFieldMap:
    defaults = JiraFieldMap()
    return JiraFieldMap(
        repo=_str_with_default(data, "repo", defaults.repo),
        language=_str_with_default(data, "language", defaults.language),
        build_command=_str_with_default(data, "build_command", defaults.build_command),
        test_command=_str_with_default(data, "test_command", defaults.test_command),
        deploy_target=_str_with_default(data, "deploy_target", defaults.deploy_target),
        files=_str_with_default(data, "files", defaults.files),
    )


def _load_project_configs(data: dict[str, object]) -> tuple[ProjectConfig, ...]:
    projects: list[ProjectConfig] = []
    for project_key, raw in data.items():
        table = _require_nested_table(raw, table_name=f"[projects.{project_key}]")
        projects.append(
            ProjectConfig(
                project_key=project_key.upper(),
                post_pr_status=_optional_str(table, "post_pr_status"),
                default_repo=_optional_repo(table, "default_repo"),
            )
        )
    return tuple(projects)


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_nested_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _optional_repo(data: dict[str, object], key: str) -> str | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    owner, _, name = value.partition("/")
    if not owner or not name or "/" in name:
        raise ConfigError(f"{key} must be in owner/name form")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item.strip())
    return tuple(out)


def _project_keys(data: dict[str, object], key: str) -> tuple[str, ...]:
    keys: list[str] = []
    for item in _tuple_of_str(data, key):
        normalized = item.upper()
        if normalized not in keys:
            keys.append(normalized)
    return tuple(keys)
