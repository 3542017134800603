from __future__ import annotations

import json

from vibereview.models import FINDING_KINDS, REVIEW_PASS_ORDER, SEVERITIES, ReviewAgentInput


def _output_schema_line() -> str:
    pass_enum = "|".join(REVIEW_PASS_ORDER)
    severity_enum = "|".join(SEVERITIES)
    kind_enum = "|".join((*FINDING_KINDS, "null"))
    return (
        '{"version":1,"run_id":"string","passes":[{"name":"'
        + pass_enum
        + '","summary":"string","findings":[{"id":"string","pass":"'
        + pass_enum
        + '","severity":"'
        + severity_enum
        + '","title":"string","body":"string","file":"string|null","line":1,"kind":"'
        + kind_enum
        + '"}]}],"autofix":{"applied":true,"summary":"string|null","changed_files":["string"]}}'
    )


def build_review_prompt(agent_input: ReviewAgentInput) -> str:
    severity_enum = "|".join(SEVERITIES)
    autofix_line = (
        "- Autofix is enabled: apply safe fixes in the workspace and list every touched file in autofix.changed_files."
        if agent_input.autofix
        else "- Autofix is disabled: do not modify files; report autofix.applied=false."
    )
    context_json = json.dumps(agent_input.to_payload(), indent=2)
    return f"""
You are a code review pass runner for repository {agent_input.repo}.

Task:
- Review branch {agent_input.branch} against {agent_input.base_branch} for issue #{agent_input.issue.id}.
- Run every pass exactly once, in this order: {", ".join(agent_input.passes)}.
- This is attempt {agent_input.attempt} of {agent_input.max_attempts}.
{autofix_line}

Pass guidance:
- implementation/security/quality/ops: keep findings concrete and tied to changed behavior.
- ux: act as a Senior Product Designer and Design Systems reviewer. Prioritize system consistency over subjective aesthetics.
- ux: focus on spacing, typography, hierarchy, iconography consistency, interaction states and accessibility.
- ux: propose actionable fixes with concrete values or tokens when applicable (px, spacing tokens, type sizes, radius, target sizes).
- ux: if UI context is partial, state assumptions explicitly (for example: 8pt grid, 16px body type, 44px minimum targets).
- growth: identify product growth opportunities (activation, retention, conversion, instrumentation, experiment gaps) grounded in evidence from the diff.
- growth: each finding must include a concrete next action suitable for a follow-up issue.
- Keep severities strictly in {severity_enum}.
- Include file and line whenever a finding maps to a specific location.

Response format:
- Return ONLY a JSON object (no markdown, no prose) matching this schema:
{_output_schema_line()}

Review context JSON:
{context_json}
""".strip()
