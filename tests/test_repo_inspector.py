from __future__ import annotations

import json

import pytest

from ticketmerge.github_gateway import GitHubPollingError
from ticketmerge.models import ContentEntry, RepositoryInfo, TicketFields
from ticketmerge.repo_inspector import (
    RepositoryInspector,
    detect_language,
    language_from_text,
    normalize_language,
    parse_instructions,
)


class FakeRepoGateway:
    def __init__(
        self,
        *,
        root: tuple[str, ...] = (),
        files: dict[str, str] | None = None,
        default_branch: str = "main",
        fail_listing: bool = False,
    ) -> None:
        self.root = root
        self.files = files or {}
        self.default_branch = default_branch
        self.fail_listing = fail_listing
        self.calls: list[str] = []

    def list_directory(self, path: str = "") -> tuple[ContentEntry, ...]:
        self.calls.append(f"list:{path}")
        if self.fail_listing:
            raise GitHubPollingError("listing timed out")
        return tuple(ContentEntry(name=name, path=name, entry_type="file") for name in self.root)

    def get_repository(self) -> RepositoryInfo:
        self.calls.append("repository")
        return RepositoryInfo(full_name="acme/web", default_branch=self.default_branch, can_push=True)

    def get_file_text(self, path: str, *, ref: str | None = None) -> str | None:
        _ = ref
        self.calls.append(f"file:{path}")
        return self.files.get(path)

    def list_releases(self, *, limit: int = 5) -> tuple[str, ...]:
        _ = limit
        return ("v1.2.0",)

    def list_branches(self) -> tuple[str, ...]:
        raise GitHubPollingError("branches unavailable")


def _inspector(gateway: FakeRepoGateway) -> RepositoryInspector:
    return RepositoryInspector(lambda _: gateway, default_deploy_target="azure-webapp")  # type: ignore[arg-type,return-value]


def test_defaults_to_node_when_repository_has_no_markers() -> None:
    config = _inspector(FakeRepoGateway()).resolve_config("acme/web", TicketFields())

    assert config.language == "node"
    assert config.build_command == "npm run build"
    assert config.test_command == "npm test"
    assert config.run_command == "npm start"
    assert config.deploy_target == "azure-webapp"
    assert config.default_branch == "main"


def test_explicit_fields_beat_instructions_and_manifest() -> None:
    gateway = FakeRepoGateway(
        root=("package.json",),
        files={
            "package.json": json.dumps({"scripts": {"build": "tsc", "test": "jest"}}),
            ".github/instructions.md": "Build Command: `yarn build`\nTest Command: yarn test\n",
        },
    )

    config = _inspector(gateway).resolve_config(
        "acme/web",
        TicketFields(build_command="make", deploy_target="docker"),
    )

    assert config.build_command == "make"
    assert config.test_command == "yarn test"
    assert config.deploy_target == "docker"


def test_instructions_documents_merge_with_earlier_winning() -> None:
    gateway = FakeRepoGateway(
        root=("pom.xml", "mvnw"),
        default_branch="develop",
        files={
            ".github/agents.md": "**Language:** java\nRun Command: 'java -jar app.jar'\n",
            "README.md": "Language: python\nDeploy Target: docker\nRun Command: ignored\n",
        },
    )

    config = _inspector(gateway).resolve_config("acme/api", TicketFields())

    assert config.language == "java"
    assert config.build_command == "./mvnw clean package"
    assert config.test_command == "./mvnw test"
    assert config.run_command == "java -jar app.jar"
    assert config.deploy_target == "docker"
    assert config.default_branch == "develop"


def test_language_precedence_field_then_text_then_detection() -> None:
    gateway = FakeRepoGateway(root=("requirements.txt", "manage.py"))
    inspector = _inspector(gateway)

    detected = inspector.resolve_config("acme/web", TicketFields())
    assert detected.language == "python"
    assert detected.run_command == "python manage.py runserver"

    from_text = inspector.resolve_config(
        "acme/web", TicketFields(), ticket_text="Please set up the Spring service"
    )
    assert from_text.language == "java"
    assert from_text.build_command == "./mvnw clean package"

    explicit = inspector.resolve_config(
        "acme/web", TicketFields(language="C#"), ticket_text="python django"
    )
    assert explicit.language == "dotnet"


def test_repository_reads_are_cached_per_repo() -> None:
    gateway = FakeRepoGateway(root=("package.json",), files={"package.json": "{}"})
    inspector = _inspector(gateway)

    inspector.resolve_config("acme/web", TicketFields())
    first_count = len(gateway.calls)
    inspector.resolve_config("acme/web", TicketFields(build_command="x"))

    assert len(gateway.calls) == first_count


def test_failed_probes_degrade_to_defaults() -> None:
    gateway = FakeRepoGateway(fail_listing=True)

    config = _inspector(gateway).resolve_config("acme/web", TicketFields())

    assert config.language == "node"
    assert config.build_command == "npm run build"


def test_transient_listing_failure_is_not_cached() -> None:
    gateway = FakeRepoGateway(root=("pom.xml", "mvnw"), default_branch="master", fail_listing=True)
    inspector = _inspector(gateway)

    degraded = inspector.resolve_config("acme/api", TicketFields())
    assert degraded.language == "node"

    gateway.fail_listing = False
    recovered = inspector.resolve_config("acme/api", TicketFields())

    assert recovered.language == "java"
    assert recovered.default_branch == "master"
    assert recovered.build_command == "./mvnw clean package"
    assert gateway.calls.count("list:") == 2

    inspector.resolve_config("acme/api", TicketFields())
    assert gateway.calls.count("list:") == 2


def test_node_manifest_uses_compile_and_ignores_invalid_json() -> None:
    compile_only = FakeRepoGateway(
        root=("package.json",),
        files={"package.json": json.dumps({"scripts": {"compile": "tsc"}})},
    )
    assert (
        _inspector(compile_only).resolve_config("acme/web", TicketFields()).build_command
        == "npm run compile"
    )

    broken = FakeRepoGateway(root=("package.json",), files={"package.json": "{not json"})
    assert _inspector(broken).resolve_config("acme/web", TicketFields()).build_command == (
        "npm run build"
    )


@pytest.mark.parametrize(
    ("root", "build", "test", "run"),
    [
        (("build.gradle", "gradlew"), "./gradlew build", "./gradlew test", "./gradlew bootRun"),
        (("pom.xml",), "mvn clean package", "mvn test", "mvn spring-boot:run"),
        (("App.sln", "App.csproj"), "dotnet build App.sln", "dotnet test App.sln", "dotnet run"),
        (("Web.csproj",), "dotnet build Web.csproj", "dotnet test", "dotnet run --project Web.csproj"),
        (("Pipfile", "main.py"), "pipenv install --dev", "pipenv run pytest", "python main.py"),
        (("pyproject.toml",), "pip install -e .", "pytest", "python app.py"),
    ],
)
def test_manifest_analysis_per_language(
    root: tuple[str, ...], build: str, test: str, run: str
) -> None:
    config = _inspector(FakeRepoGateway(root=root)).resolve_config("acme/x", TicketFields())
    assert (config.build_command, config.test_command, config.run_command) == (build, test, run)


def test_describe_repository_skips_failed_probes() -> None:
    gateway = FakeRepoGateway(root=("package.json",), files={"README.md": "# Web\nHello"})

    summary = _inspector(gateway).describe_repository("acme/web")

    assert "Detected language: node" in summary
    assert "Recent releases: v1.2.0" in summary
    assert "Branch count" not in summary
    assert "# Web" in summary


def test_detection_and_parsing_helpers() -> None:
    assert detect_language(("Package.json", "pom.xml")) == "node"
    assert detect_language(("api.csproj", "requirements.txt")) == "dotnet"
    assert detect_language(("setup.py",)) == "python"
    assert detect_language(("build.gradle.kts",)) == "java"
    assert detect_language(("Makefile",)) is None

    assert normalize_language(" Node.js ") == "node"
    assert normalize_language("rust") is None
    assert language_from_text("Deploy the .NET api") == "dotnet"
    assert language_from_text("nothing here") is None

    hints = parse_instructions('Build Command: "npm ci && npm run build"\nlanguage: TypeScript\n')
    assert hints.build_command == "npm ci && npm run build"
    assert hints.language == "node"
    assert hints.test_command is None
