"""Shared fixtures: mock LLM clients and throwaway git repositories."""

import asyncio
import json
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from stet.llm import GenerateOptions, GenerateResult, LLMClient


class MockLLMClient(LLMClient):
    """Mock LLM client that records every call.

    ``respond`` maps ``(model, system, prompt)`` to the response text; the
    default reports no findings.
    """

    def __init__(
        self,
        respond: Callable[[str, str, str], str] | None = None,
        delay: float = 0.0,
        context_length: int = 0,
    ):
        self.respond = respond or (lambda model, system, prompt: "[]")
        self.delay = delay
        self.context_length = context_length
        self.calls: list[dict] = []
        self.checked: list[str] = []
        self.active = 0
        self.max_active = 0

    async def generate(self, model: str, system: str, prompt: str, options: GenerateOptions) -> GenerateResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append({"model": model, "system": system, "prompt": prompt, "options": options})
            if self.delay:
                await asyncio.sleep(self.delay)
            text = self.respond(model, system, prompt)
            return GenerateResult(
                response=text, model=model, prompt_eval_count=10, eval_count=5, eval_duration=1000
            )
        finally:
            self.active -= 1

    async def check(self, model: str) -> None:
        self.checked.append(model)

    async def show(self, model: str) -> int:
        return self.context_length

    @property
    def name(self) -> str:
        return "MockLLM"


def finding_json(line: int, message: str, **extra) -> dict:
    data = {"line": line, "severity": "error", "category": "bug", "confidence": 0.95, "message": message}
    data.update(extra)
    return data


def respond_with(findings: list[dict]) -> Callable[[str, str, str], str]:
    return lambda model, system, prompt: json.dumps(findings)


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def commit_file(repo: Path, rel: str, content: str, message: str = "change") -> str:
    path = repo / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", rel)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path):
    """A repository with one initial commit and ``.review/`` ignored."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "user.name", "Test")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / ".gitignore").write_text(".review/\n")
    git(repo, "add", ".gitignore")
    git(repo, "commit", "-q", "-m", "initial")
    return repo
