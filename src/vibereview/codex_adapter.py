from __future__ import annotations

from pathlib import Path
import logging

from vibereview.agent_adapter import AgentRunResult, ReviewAgentAdapter, shell_argv
from vibereview.agent_output import SchemaMismatchError, parse_agent_output
from vibereview.config import CodexConfig
from vibereview.models import ReviewAgentInput
from vibereview.observability import log_event, warn_event
from vibereview.prompts import build_review_prompt
from vibereview.shell import run, run_process


LOGGER = logging.getLogger("vibereview.codex_adapter")


class CodexAdapter(ReviewAgentAdapter):
    def __init__(
        self,
        config: CodexConfig,
        *,
        binary: str | None = None,
        command_override: str | None = None,
        resume_thread_id: str | None = None,
    ) -> None:
        self._config = config
        self._binary = binary or "codex"
        self._command_override = command_override
        self._resume_thread_id = resume_thread_id

    def run_review(self, *, agent_input: ReviewAgentInput, cwd: Path) -> AgentRunResult:
        prompt = build_review_prompt(agent_input)

        if self._command_override:
            log_event(LOGGER, "codex_turn_started", mode="override", attempt=agent_input.attempt)
            stdout = run(shell_argv(self._command_override), cwd=cwd, input_text=prompt)
            return AgentRunResult(output=parse_agent_output(stdout), runner="codex")

        if self._resume_thread_id:
            log_event(
                LOGGER,
                "codex_turn_started",
                mode="resume",
                thread_id=self._resume_thread_id,
                attempt=agent_input.attempt,
            )
            resume_cmd = [self._binary, "exec", "resume", self._resume_thread_id, "-"]
            resumed = run_process(resume_cmd, cwd=cwd, input_text=prompt)
            if resumed.ok:
                try:
                    output = parse_agent_output(resumed.stdout)
                except SchemaMismatchError as exc:
                    fallback_reason = f"unparsable resume output: {exc.sample[:80]}"
                else:
                    return AgentRunResult(
                        output=output,
                        runner="codex",
                        resume_attempted=True,
                        resume_fallback=False,
                    )
            else:
                fallback_reason = f"resume exited with {resumed.exit_code}"

            warn_event(
                LOGGER,
                "agent_resume_fallback",
                thread_id=self._resume_thread_id,
                reason=fallback_reason,
            )
            stdout = run(self._fresh_command(), cwd=cwd, input_text=prompt)
            return AgentRunResult(
                output=parse_agent_output(stdout),
                runner="codex",
                resume_attempted=True,
                resume_fallback=True,
            )

        log_event(LOGGER, "codex_turn_started", mode="fresh", attempt=agent_input.attempt)
        stdout = run(self._fresh_command(), cwd=cwd, input_text=prompt)
        return AgentRunResult(output=parse_agent_output(stdout), runner="codex")

    def _fresh_command(self) -> list[str]:
        cmd = [self._binary, "exec", "--skip-git-repo-check"]
        self._append_common_options(cmd)
        cmd.append("-")
        return cmd

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.sandbox:
            cmd.extend(["--sandbox", self._config.sandbox])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)
