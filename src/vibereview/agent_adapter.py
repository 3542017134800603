from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
import json
import logging
import shutil
from typing import Literal

from vibereview.agent_output import parse_agent_output
from vibereview.models import AgentOutput, ReviewAgentInput
from vibereview.observability import log_event
from vibereview.prompts import build_review_prompt
from vibereview.shell import run


RunnerName = Literal["command", "codex", "claude", "gemini"]

LOGGER = logging.getLogger("vibereview.agent_adapter")


@dataclass(frozen=True)
class AgentRunResult:
    output: AgentOutput
    runner: RunnerName
    resume_attempted: bool = False
    resume_fallback: bool = False


class ReviewAgentAdapter(ABC):
    @abstractmethod
    def run_review(self, *, agent_input: ReviewAgentInput, cwd: Path) -> AgentRunResult:
        """Run all review passes once and return the validated agent output."""


def shell_argv(command: str) -> list[str]:
    shell = "zsh" if shutil.which("zsh") else "sh"
    return [shell, "-lc", command]


class CommandAgentAdapter(ReviewAgentAdapter):
    """Runs a fixed shell command that reads the review context JSON on stdin."""

    def __init__(self, command: str) -> None:
        normalized = command.strip()
        if not normalized:
            raise ValueError("review agent command is required")
        self._command = normalized

    def run_review(self, *, agent_input: ReviewAgentInput, cwd: Path) -> AgentRunResult:
        log_event(LOGGER, "agent_command_started", attempt=agent_input.attempt)
        stdout = run(
            shell_argv(self._command),
            cwd=cwd,
            input_text=json.dumps(agent_input.to_payload()) + "\n",
        )
        return AgentRunResult(output=parse_agent_output(stdout), runner="command")


class PromptAgentAdapter(ReviewAgentAdapter):
    """Claude and Gemini style CLIs that take the whole prompt as one argument."""

    def __init__(
        self,
        *,
        provider: Literal["claude", "gemini"],
        binary: str | None = None,
        command_override: str | None = None,
    ) -> None:
        self._provider = provider
        self._binary = binary or provider
        self._command_override = command_override

    def run_review(self, *, agent_input: ReviewAgentInput, cwd: Path) -> AgentRunResult:
        prompt = build_review_prompt(agent_input)
        log_event(
            LOGGER,
            "agent_prompt_started",
            provider=self._provider,
            attempt=agent_input.attempt,
            override=self._command_override is not None,
        )
        if self._command_override:
            stdout = run(shell_argv(self._command_override), cwd=cwd, input_text=prompt)
        else:
            stdout = run([self._binary, "-p", prompt], cwd=cwd)
        return AgentRunResult(output=parse_agent_output(stdout), runner=self._provider)
