from __future__ import annotations

import json

from ticketmerge.models import Language, RepositoryConfig
from ticketmerge.prompts import secret_placeholder


CONTAINER_DEPLOY_TARGETS = frozenset({"docker", "azure-webapp"})

_SETUP_STEPS: dict[Language, str] = {
    "node": "      - uses: actions/setup-node@v4\n        with:\n          node-version: 20",
    "python": "      - uses: actions/setup-python@v5\n        with:\n          python-version: '3.12'",
    "dotnet": "      - uses: actions/setup-dotnet@v4\n        with:\n          dotnet-version: '8.0.x'",
    "java": (
        "      - uses: actions/setup-java@v4\n"
        "        with:\n"
        "          distribution: temurin\n"
        "          java-version: '17'"
    ),
}

_DOCKER_BASES: dict[Language, tuple[str, str]] = {
    "node": ("node:20-alpine", "npm ci"),
    "python": ("python:3.12-slim", "pip install -r requirements.txt"),
    "dotnet": ("mcr.microsoft.com/dotnet/sdk:8.0", "dotnet restore"),
    "java": ("eclipse-temurin:17-jdk", "./mvnw -q dependency:go-offline"),
}


def workflow_path(repo_name: str) -> str:
    return f".github/workflows/{repo_name}-ci.yml"


def marker_path(ticket_key: str) -> str:
    return f".github/automation/{ticket_key}.json"


def needs_dockerfile(config: RepositoryConfig) -> bool:
    return config.deploy_target.strip().lower() in CONTAINER_DEPLOY_TARGETS


def render_workflow(repo_name: str, config: RepositoryConfig) -> str:
    deploy = ""
    if config.deploy_target.strip().lower() == "azure-webapp":
        deploy = f"""
  deploy:
    needs: build
    if: github.event_name == 'push'
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - uses: azure/webapps-deploy@v3
        with:
          app-name: {secret_placeholder("AZURE_WEBAPP_NAME")}
          publish-profile: {secret_placeholder("AZURE_WEBAPP_PUBLISH_PROFILE")}
"""
    elif config.deploy_target.strip().lower() == "docker":
        deploy = f"""
  deploy:
    needs: build
    if: github.event_name == 'push'
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - uses: docker/login-action@v3
        with:
          registry: {secret_placeholder("ACR_LOGIN_SERVER")}
          username: {secret_placeholder("ACR_USERNAME")}
          password: {secret_placeholder("ACR_PASSWORD")}
      - run: docker build -t {secret_placeholder("ACR_LOGIN_SERVER")}/{repo_name}:${{{{ github.sha }}}} .
      - run: docker push {secret_placeholder("ACR_LOGIN_SERVER")}/{repo_name}:${{{{ github.sha }}}}
"""
    return f"""name: {repo_name} CI

on:
  push:
    branches: [{config.default_branch}]
  pull_request:
    branches: [{config.default_branch}]
  workflow_dispatch:

jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
{_SETUP_STEPS[config.language]}
      - name: Build
        run: {config.build_command}
      - name: Test
        run: {config.test_command}
{deploy}"""


def render_dockerfile(config: RepositoryConfig) -> str:
    base_image, install = _DOCKER_BASES[config.language]
    return f"""FROM {base_image}
WORKDIR /app
COPY . .
RUN {install}
RUN {config.build_command}
CMD {json.dumps(config.run_command.split())}
"""


def render_marker(ticket_key: str, config: RepositoryConfig, existing_workflows: tuple[str, ...]) -> str:
    payload = {
        "ticket": ticket_key,
        "language": config.language,
        "build_command": config.build_command,
        "test_command": config.test_command,
        "deploy_target": config.deploy_target,
        "existing_workflows": list(existing_workflows),
    }
    return f"{json.dumps(payload, indent=2, sort_keys=True)}\n"
