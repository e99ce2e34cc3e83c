from __future__ import annotations

from ticketmerge.models import RepositoryConfig, Ticket


REQUIRED_SECRETS_BY_TARGET: dict[str, tuple[str, ...]] = {
    "azure-webapp": ("AZURE_WEBAPP_NAME", "AZURE_WEBAPP_PUBLISH_PROFILE"),
    "docker": ("ACR_LOGIN_SERVER", "ACR_USERNAME", "ACR_PASSWORD"),
}


def secret_placeholder(name: str) -> str:
    return "${{ secrets." + name + " }}"


def required_secret_names(deploy_target: str) -> tuple[str, ...]:
    return REQUIRED_SECRETS_BY_TARGET.get(deploy_target.strip().lower(), ())


def _config_table(repo_full_name: str, config: RepositoryConfig) -> str:
    rows = [
        ("Repository", repo_full_name),
        ("Language", config.language),
        ("Build command", f"`{config.build_command}`"),
        ("Test command", f"`{config.test_command}`"),
        ("Run command", f"`{config.run_command}`"),
        ("Deploy target", config.deploy_target),
        ("Default branch", config.default_branch),
    ]
    lines = ["| Setting | Value |", "| --- | --- |"]
    lines.extend(f"| {label} | {value} |" for label, value in rows)
    return "\n".join(lines)


def _secret_lines(secret_names: tuple[str, ...], deploy_target: str) -> str:
    required = required_secret_names(deploy_target)
    lines: list[str] = []
    for name in required:
        state = "configured" if name in secret_names else "missing"
        lines.append(f"- `{secret_placeholder(name)}` ({state})")
    for name in secret_names:
        if name not in required:
            lines.append(f"- `{secret_placeholder(name)}`")
    return "\n".join(lines) if lines else "- No repository secrets are configured."


def build_fix_plan_prompt(
    *,
    ticket: Ticket,
    repo_full_name: str,
    config: RepositoryConfig,
    repo_summary: str,
) -> str:
    return f"""
You are a senior DevOps engineer preparing CI/CD for repository {repo_full_name}.

Task:
- Read the ticket and the repository summary below.
- Describe, in at most 12 short bullet points, how to make the build, tests, and deployment pass.
- Refer to secrets by name only. Never invent secret values.
- Plain markdown only. No code fences.

Resolved configuration:
{_config_table(repo_full_name, config)}

Ticket {ticket.key}: {ticket.summary}

Ticket description:
{ticket.description or "(empty)"}

Repository summary:
{repo_summary}
""".strip()


def build_pipeline_prompt(
    *,
    ticket: Ticket,
    repo_full_name: str,
    config: RepositoryConfig,
    secret_names: tuple[str, ...],
) -> str:
    return f"""
Write a GitHub Actions workflow for repository {repo_full_name} ({ticket.key}).

Requirements:
- Trigger on push and pull_request to {config.default_branch}, plus workflow_dispatch.
- Job "build": set up {config.language}, run `{config.build_command}`, then `{config.test_command}`.
- Job "deploy" targets {config.deploy_target}, needs "build", and runs only on pushes to {config.default_branch}.
- Reference secrets only with the ${{{{ secrets.NAME }}}} syntax. Available secret names:
{_secret_lines(secret_names, config.deploy_target)}

Return the YAML document only.
""".strip()


def build_delegation_prompt(
    *,
    ticket: Ticket,
    repo_full_name: str,
    config: RepositoryConfig,
    branch_name: str,
    pr_number: int,
    secret_names: tuple[str, ...],
    mention: str,
    fix_strategy: str | None,
) -> str:
    files_lines = ""
    if ticket.fields.files:
        files = "\n".join(f"- `{path}`" for path in ticket.fields.files)
        files_lines = f"\nFiles to focus on:\n{files}\n"
    strategy = f"\nSuggested approach:\n{fix_strategy}\n" if fix_strategy else ""
    return f"""
{mention} /fix Please make the CI/CD pipeline on this branch pass for {ticket.key}.

{_config_table(repo_full_name, config)}

Secrets (reference them by placeholder, never by value):
{_secret_lines(secret_names, config.deploy_target)}
{files_lines}{strategy}
Constraints:
- Open your pull request against `{branch_name}`, not the default branch.
- Include `Refs #{pr_number}` in your pull request description.
- Mark the pull request as WIP in its title until it is ready to merge.
""".strip()


def build_pull_request_body(
    *,
    ticket: Ticket,
    repo_full_name: str,
    config: RepositoryConfig,
    written_paths: tuple[str, ...],
    secret_names: tuple[str, ...],
    fix_strategy: str | None,
) -> str:
    changes = "\n".join(f"- `{path}`" for path in written_paths) or "- (no file changes)"
    analysis = ""
    if fix_strategy:
        analysis = f"\n## Analysis\n\n{fix_strategy}\n"
    return f"""
Sets up CI/CD for {ticket.key}: {ticket.summary}

## Configuration

{_config_table(repo_full_name, config)}

## Changes

{changes}

## Secrets

{_secret_lines(secret_names, config.deploy_target)}
{analysis}""".strip()


def pull_request_title(ticket: Ticket, config: RepositoryConfig) -> str:
    return f"{ticket.key}: Enable CI/CD for {config.language}"
