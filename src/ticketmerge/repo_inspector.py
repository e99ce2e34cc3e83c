from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import json
import logging
import re
import threading
from typing import TypeVar, cast

from ticketmerge.github_gateway import GitHubGateway
from ticketmerge.models import Language, RepositoryConfig, TicketFields
from ticketmerge.observability import log_event


LOGGER = logging.getLogger("ticketmerge.repo_inspector")
_T = TypeVar("_T")

INSTRUCTION_PATHS: tuple[str, ...] = (".github/instructions.md", ".github/agents.md", "README.md")

LANGUAGE_DEFAULTS: dict[Language, tuple[str, str, str]] = {
    "node": ("npm run build", "npm test", "npm start"),
    "dotnet": ("dotnet build", "dotnet test", "dotnet run"),
    "python": ("pip install -r requirements.txt", "pytest", "python app.py"),
    "java": ("./mvnw clean package", "./mvnw test", "java -jar target/app.jar"),
}

_LANGUAGE_ALIASES: dict[str, Language] = {
    "node": "node",
    "nodejs": "node",
    "node.js": "node",
    "javascript": "node",
    "js": "node",
    "typescript": "node",
    "dotnet": "dotnet",
    ".net": "dotnet",
    "c#": "dotnet",
    "csharp": "dotnet",
    "python": "python",
    "py": "python",
    "java": "java",
}

_TEXT_LANGUAGE_PATTERNS: tuple[tuple[Language, re.Pattern[str]], ...] = (
    ("node", re.compile(r"\b(node|nodejs|javascript|js)\b", re.IGNORECASE)),
    ("python", re.compile(r"\b(python|django|flask)\b", re.IGNORECASE)),
    ("dotnet", re.compile(r"(\bdotnet\b|\.net\b|\bc#|\bcsharp\b)", re.IGNORECASE)),
    ("java", re.compile(r"\b(java|spring|maven|gradle)\b", re.IGNORECASE)),
)


def _instruction_pattern(label: str) -> re.Pattern[str]:
    return re.compile(
        rf"{label}\s*:\**\s*(`[^`\n]+`|\"[^\"\n]+\"|'[^'\n]+'|[^\n]+)",
        re.IGNORECASE,
    )


_INSTRUCTION_PATTERNS: dict[str, re.Pattern[str]] = {
    "build_command": _instruction_pattern("Build Command"),
    "test_command": _instruction_pattern("Test Command"),
    "run_command": _instruction_pattern("Run Command"),
    "language": _instruction_pattern("Language"),
    "deploy_target": _instruction_pattern("Deploy Target"),
}


@dataclass(frozen=True)
class InstructionHints:
    build_command: str | None = None
    test_command: str | None = None
    run_command: str | None = None
    language: Language | None = None
    deploy_target: str | None = None


@dataclass(frozen=True)
class ManifestHints:
    build_command: str | None = None
    test_command: str | None = None
    run_command: str | None = None


@dataclass(frozen=True)
class _RepoSignals:
    root_names: tuple[str, ...]
    detected_language: Language | None
    instructions: InstructionHints
    default_branch: str


def normalize_language(value: str | None) -> Language | None:
    if value is None:
        return None
    return _LANGUAGE_ALIASES.get(value.strip().lower())


def language_from_text(text: str) -> Language | None:
    for language, pattern in _TEXT_LANGUAGE_PATTERNS:
        if pattern.search(text):
            return language
    return None


def detect_language(root_names: tuple[str, ...]) -> Language | None:
    """Marker-file detection; the first language in check order wins."""
    names = {name.lower() for name in root_names}
    if "package.json" in names:
        return "node"
    if any(name.endswith((".csproj", ".sln")) for name in names):
        return "dotnet"
    if names & {"requirements.txt", "setup.py", "pipfile", "pyproject.toml"}:
        return "python"
    if names & {"pom.xml", "build.gradle", "build.gradle.kts"}:
        return "java"
    return None


def parse_instructions(text: str) -> InstructionHints:
    values: dict[str, str] = {}
    for field_name, pattern in _INSTRUCTION_PATTERNS.items():
        match = pattern.search(text)
        if match is None:
            continue
        cleaned = _strip_wrapping(match.group(1))
        if cleaned:
            values[field_name] = cleaned
    return InstructionHints(
        build_command=values.get("build_command"),
        test_command=values.get("test_command"),
        run_command=values.get("run_command"),
        language=normalize_language(values.get("language")),
        deploy_target=values.get("deploy_target"),
    )


def _strip_wrapping(value: str) -> str:
    return value.strip().strip("`\"'").strip()


def _first(*candidates: str | None) -> str | None:
    for candidate in candidates:
        if candidate is not None and candidate.strip():
            return candidate.strip()
    return None


class RepositoryInspector:
    """Derives a fully populated RepositoryConfig for a repository.

    Per field, the first non-empty source wins: explicit ticket field, hints from
    the ticket text (language only), the in-repo instructions document, manifest
    analysis, then the language default. Any probe that fails counts as "no
    signal". Repository reads are cached for the life of the process.
    """

    def __init__(
        self,
        gateway_for: Callable[[str], GitHubGateway],
        *,
        default_deploy_target: str = "azure-webapp",
    ) -> None:
        self._gateway_for = gateway_for
        self._default_deploy_target = default_deploy_target
        self._signals_by_repo: dict[str, _RepoSignals] = {}
        self._manifest_by_repo: dict[tuple[str, Language], ManifestHints] = {}
        self._lock = threading.Lock()

    def resolve_config(
        self,
        repo_full_name: str,
        fields: TicketFields,
        *,
        ticket_text: str = "",
    ) -> RepositoryConfig:
        signals = self._signals(repo_full_name)
        instructions = signals.instructions
        language: Language = (
            normalize_language(fields.language)
            or language_from_text(ticket_text)
            or instructions.language
            or signals.detected_language
            or "node"
        )
        manifest = self._manifest(repo_full_name, language, signals.root_names)
        default_build, default_test, default_run = LANGUAGE_DEFAULTS[language]
        config = RepositoryConfig(
            language=language,
            build_command=cast(
                str,
                _first(
                    fields.build_command,
                    instructions.build_command,
                    manifest.build_command,
                    default_build,
                ),
            ),
            test_command=cast(
                str,
                _first(
                    fields.test_command,
                    instructions.test_command,
                    manifest.test_command,
                    default_test,
                ),
            ),
            run_command=cast(
                str, _first(instructions.run_command, manifest.run_command, default_run)
            ),
            deploy_target=cast(
                str,
                _first(
                    fields.deploy_target,
                    instructions.deploy_target,
                    self._default_deploy_target,
                ),
            ),
            default_branch=signals.default_branch,
        )
        log_event(
            LOGGER,
            "repo_config_resolved",
            repo_full_name=repo_full_name,
            language=config.language,
            build_command=config.build_command,
            test_command=config.test_command,
            deploy_target=config.deploy_target,
        )
        return config

    def describe_repository(self, repo_full_name: str) -> str:
        """Plain-text summary used as advisor context."""
        signals = self._signals(repo_full_name)
        gateway = self._gateway_for(repo_full_name)
        lines = [
            f"Repository: {repo_full_name}",
            f"Default branch: {signals.default_branch}",
            f"Detected language: {signals.detected_language or 'unknown'}",
            f"Root files: {', '.join(signals.root_names) or '(none)'}",
        ]
        releases = self._probe(repo_full_name, "releases", gateway.list_releases)
        if releases:
            lines.append(f"Recent releases: {', '.join(releases)}")
        branches = self._probe(repo_full_name, "branches", gateway.list_branches)
        if branches:
            lines.append(f"Branch count: {len(branches)}")
        readme = self._probe(repo_full_name, "readme", lambda: gateway.get_file_text("README.md"))
        if readme:
            lines.append("README excerpt:")
            lines.append(readme[:1500])
        return "\n".join(lines)

    def _signals(self, repo_full_name: str) -> _RepoSignals:
        with self._lock:
            cached = self._signals_by_repo.get(repo_full_name)
        if cached is not None:
            return cached

        gateway = self._gateway_for(repo_full_name)
        failed: list[str] = []
        entries = self._probe(repo_full_name, "root_listing", gateway.list_directory, failed) or ()
        root_names = tuple(entry.name for entry in entries)
        repository = self._probe(repo_full_name, "repository", gateway.get_repository, failed)
        signals = _RepoSignals(
            root_names=root_names,
            detected_language=detect_language(root_names),
            instructions=self._instructions(repo_full_name, gateway, failed),
            default_branch=repository.default_branch if repository is not None else "main",
        )
        # Degraded answers are used once and asked again next time.
        if failed:
            log_event(
                LOGGER,
                "repo_signals_not_cached",
                repo_full_name=repo_full_name,
                failed=",".join(failed),
            )
            return signals
        with self._lock:
            self._signals_by_repo[repo_full_name] = signals
        return signals

    def _instructions(
        self, repo_full_name: str, gateway: GitHubGateway, failed: list[str]
    ) -> InstructionHints:
        hints = InstructionHints()
        for path in INSTRUCTION_PATHS:
            text = self._probe(
                repo_full_name, path, lambda p=path: gateway.get_file_text(p), failed
            )
            if not text:
                continue
            found = parse_instructions(text)
            # Earlier documents win field by field.
            hints = InstructionHints(
                build_command=hints.build_command or found.build_command,
                test_command=hints.test_command or found.test_command,
                run_command=hints.run_command or found.run_command,
                language=hints.language or found.language,
                deploy_target=hints.deploy_target or found.deploy_target,
            )
        return hints

    def _manifest(
        self, repo_full_name: str, language: Language, root_names: tuple[str, ...]
    ) -> ManifestHints:
        cache_key = (repo_full_name, language)
        with self._lock:
            cached = self._manifest_by_repo.get(cache_key)
        if cached is not None:
            return cached

        gateway = self._gateway_for(repo_full_name)
        analyzers: dict[Language, Callable[[], ManifestHints]] = {
            "node": lambda: self._node_manifest(repo_full_name, gateway),
            "java": lambda: _java_manifest(root_names),
            "dotnet": lambda: _dotnet_manifest(root_names),
            "python": lambda: _python_manifest(root_names),
        }
        failed: list[str] = []
        hints = self._probe(repo_full_name, f"{language}_manifest", analyzers[language], failed)
        result = hints or ManifestHints()
        if failed:
            return result
        with self._lock:
            self._manifest_by_repo[cache_key] = result
        return result

    def _node_manifest(self, repo_full_name: str, gateway: GitHubGateway) -> ManifestHints:
        text = gateway.get_file_text("package.json")
        if not text:
            return ManifestHints()
        try:
            package = json.loads(text)
        except json.JSONDecodeError:
            log_event(LOGGER, "repo_manifest_invalid", repo_full_name=repo_full_name, path="package.json")
            return ManifestHints()
        scripts = package.get("scripts") if isinstance(package, dict) else None
        if not isinstance(scripts, dict):
            return ManifestHints()
        build = None
        if "build" in scripts:
            build = "npm run build"
        elif "compile" in scripts:
            build = "npm run compile"
        return ManifestHints(
            build_command=build,
            test_command="npm test" if "test" in scripts else None,
            run_command="npm start" if "start" in scripts else None,
        )

    def _probe(
        self,
        repo_full_name: str,
        probe: str,
        fn: Callable[[], _T],
        failed: list[str] | None = None,
    ) -> _T | None:
        """Run one read; a raised error is logged, noted in ``failed`` and read as ``None``.

        Reads that answer "not found" return normally and are not failures.
        """
        try:
            return fn()
        except Exception as exc:  # noqa: BLE001
            if failed is not None:
                failed.append(probe)
            log_event(
                LOGGER,
                "repo_probe_failed",
                repo_full_name=repo_full_name,
                probe=probe,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None


def _java_manifest(root_names: tuple[str, ...]) -> ManifestHints:
    names = set(root_names)
    if "pom.xml" in names:
        tool = "./mvnw" if "mvnw" in names else "mvn"
        return ManifestHints(
            build_command=f"{tool} clean package",
            test_command=f"{tool} test",
            run_command=f"{tool} spring-boot:run",
        )
    if names & {"build.gradle", "build.gradle.kts"}:
        tool = "./gradlew" if "gradlew" in names else "gradle"
        return ManifestHints(
            build_command=f"{tool} build",
            test_command=f"{tool} test",
            run_command=f"{tool} bootRun",
        )
    return ManifestHints()


def _dotnet_manifest(root_names: tuple[str, ...]) -> ManifestHints:
    solutions = sorted(name for name in root_names if name.endswith(".sln"))
    projects = sorted(name for name in root_names if name.endswith(".csproj"))
    if solutions:
        return ManifestHints(
            build_command=f"dotnet build {solutions[0]}",
            test_command=f"dotnet test {solutions[0]}",
        )
    if projects:
        return ManifestHints(
            build_command=f"dotnet build {projects[0]}",
            test_command="dotnet test",
            run_command=f"dotnet run --project {projects[0]}",
        )
    return ManifestHints()


def _python_manifest(root_names: tuple[str, ...]) -> ManifestHints:
    names = set(root_names)
    build: str | None = None
    test: str | None = None
    if "requirements.txt" in names:
        build = "pip install -r requirements.txt"
        test = "pytest"
    elif "Pipfile" in names:
        build = "pipenv install --dev"
        test = "pipenv run pytest"
    elif names & {"pyproject.toml", "setup.py"}:
        build = "pip install -e ."
        test = "pytest"

    run_command: str | None = None
    if "manage.py" in names:
        run_command = "python manage.py runserver"
    elif "app.py" in names:
        run_command = "python app.py"
    elif "main.py" in names:
        run_command = "python main.py"
    return ManifestHints(build_command=build, test_command=test, run_command=run_command)
