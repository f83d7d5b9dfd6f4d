"""Prompt builders for each pipeline phase."""

from pathlib import Path

from autopilot.errors import ConfigurationError
from autopilot.progress import Phase
from autopilot.signals import CODEX_DONE, COMPLETED, FAILED, REVIEW_DONE

CONTINUE_WINDOW = 500  # trailing characters of the previous output to quote

FIRST_REVIEW_PROMPT = f"""\
You are reviewing code changes for quality and correctness.

## Instructions

1. Run `git diff` to see all uncommitted changes
2. Review each changed file for:
   - Code correctness and logic errors
   - Error handling completeness
   - Test coverage for new code
   - Code style and naming conventions
   - Potential security issues
3. If you find issues, fix them directly
4. Run tests after making fixes
5. When review is complete and all issues are fixed, output {REVIEW_DONE}
6. If you encounter a blocking issue you cannot fix, output {FAILED}

Important: Only output {REVIEW_DONE} or {FAILED} as terminal signals.
"""

SECOND_REVIEW_PROMPT_TEMPLATE = f"""\
You are reviewing code based on external analysis findings.

## Analysis Findings

{{findings}}

## Instructions

1. Review each finding from the analysis
2. For valid issues, implement fixes directly
3. For false positives or non-issues, skip them
4. Run tests after making fixes
5. When all valid findings are addressed, output {REVIEW_DONE}
6. If you encounter a blocking issue, output {FAILED}

Important: Only output {REVIEW_DONE} or {FAILED} as terminal signals.
"""

ANALYSIS_PROMPT = f"""\
Analyze the current git diff for code quality issues.

Focus on:
1. Logic errors and bugs
2. Missing error handling
3. Security vulnerabilities
4. Performance issues
5. Code that doesn't match the surrounding style

For each issue found, provide:
- File and line number
- Description of the issue
- Suggested fix

If no significant issues are found, state that the code looks good.

Output {CODEX_DONE} when analysis is complete.
"""


def build_task_prompt(plan_file: str | Path, iteration: int) -> str:
    """Embed the plan file verbatim into the task-phase prompt."""
    try:
        plan = Path(plan_file).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Cannot read plan file {plan_file}: {exc}") from exc

    return (
        "You are executing a plan autonomously. "
        f"This is iteration {iteration}.\n\n"
        "## Plan\n\n"
        f"{plan}\n\n"
        "## Instructions\n\n"
        "1. Review the plan and identify the next incomplete task\n"
        "2. Execute the task, making necessary code changes\n"
        "3. Run tests to verify your changes work\n"
        "4. Update the plan file to mark completed tasks with [x]\n"
        f"5. If all tasks are complete, output {COMPLETED}\n"
        f"6. If you encounter a blocking issue, output {FAILED} with explanation\n"
        "7. Otherwise, continue to the next task\n\n"
        f"Important: Only output {COMPLETED} or {FAILED} as terminal signals. "
        "Do not output these words in any other context.\n"
    )


def build_first_review_prompt() -> str:
    return FIRST_REVIEW_PROMPT


def build_second_review_prompt(findings: str) -> str:
    return SECOND_REVIEW_PROMPT_TEMPLATE.format(findings=findings.strip())


def build_analysis_prompt() -> str:
    return ANALYSIS_PROMPT


def build_continue_prompt(previous_output: str, phase: Phase = Phase.TASK) -> str:
    """Prompt for the next iteration, quoting the tail of the last output."""
    tail = previous_output[-CONTINUE_WINDOW:]
    if phase == Phase.REVIEW:
        reminder = f"Continue the review. Output {REVIEW_DONE} when done or {FAILED} if blocked."
    else:
        reminder = f"Continue executing tasks. Remember to output {COMPLETED} when done or {FAILED} if blocked."
    return (
        "Continue from where you left off.\n\n"
        f"## Previous Output (last {CONTINUE_WINDOW} chars)\n\n"
        f"{tail}\n\n"
        f"{reminder}\n"
    )
