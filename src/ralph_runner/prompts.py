"""Built-in worker instructions and `.ralph/*_prompt.txt` overrides."""

from __future__ import annotations

from pathlib import Path

from .constants import PRD_FILE, STATE_DIR_NAME
from .models import Unit

SYSTEM_PROMPT_FILE = "system_prompt.txt"

UNIT_PROMPT_FILES: dict[Unit, str] = {
    Unit.PLAN: "planning_prompt.txt",
    Unit.IMPLEMENT: "implementation_prompt.txt",
    Unit.GUARDRAIL: "guardrail_verify_prompt.txt",
    Unit.CLEANUP: "cleanup_prompt.txt",
    Unit.COMMIT: "commit_prompt.txt",
    Unit.REFACTOR: "agents_refactor_prompt.txt",
    Unit.SELF_IMPROVEMENT: "self_improvement_prompt.txt",
}

SYSTEM_PROMPT = """AUTONOMOUS MODE: You are operating in fully autonomous mode.

CRITICAL RULES:

- DO NOT ask follow-up questions
- DO NOT request clarification
- DO NOT ask for confirmation before proceeding
- DO NOT ask "what should I do next?" or similar questions
- Make reasonable decisions independently and proceed immediately
- If you encounter ambiguity, use your best judgment based on the context provided
- If information is missing, make reasonable assumptions based on PRD.md, codebase patterns, and best practices
- Complete each step fully without asking if you should continue

DECISION-MAKING FRAMEWORK:
When multiple options exist, prioritize by:

1. Dependencies (work on prerequisites first)
2. Impact (higher value features first)
3. Complexity (easier tasks first if tied)
4. Codebase patterns (follow existing conventions)

EDGE CASE HANDLING:

- If a step cannot be completed: document the blocker and output <promise>BLOCKED</promise>
- If no changes are needed: proceed to next step without asking
- If commit fails (no changes): proceed anyway, do not ask what to do
- If information is ambiguous: interpret reasonably and proceed"""

PLANNING_PROMPT = """@.ralph/PRD.md @.ralph/PROGRESS.md @GUARDRAILS.md
1. Review all incomplete tasks in the PRD and assess their complexity (easy, medium, hard).
2. PRIORITY: Find an incomplete task that is EASY or MEDIUM complexity. Bias towards tasks that are visible to the user.
3. If no easy/medium tasks exist:
   a. Select a MEDIUM-HARD complexity task
   b. Break it down into 3-5 smaller, manageable subtasks (each should be easy or medium complexity)
   c. Update .ralph/PRD.md by replacing the original task with the subtasks (maintain the same checkbox format)
   d. Select ONE of the newly created subtasks to work on
4. Create a detailed plan for the selected task, including tests, a task breakdown and acceptance criteria.
5. If @GUARDRAILS.md exists, ensure your plan complies with it.
6. Write the plan to .ralph/PLAN.md.
ONLY WORK ON ONE TASK.
DO NOT ask which task to work on; select one autonomously using the decision-making framework.
If the PRD is complete, output <promise>COMPLETE</promise>.
If you are blocked, output <promise>BLOCKED</promise> and explain the blocker."""

IMPLEMENTATION_PROMPT = """@.ralph/PRD.md @.ralph/PLAN.md @.ralph/PROGRESS.md @CLAUDE.md
1. Pay close attention to @CLAUDE.md and follow any instructions it provides.
2. Implement the task completely, based on .ralph/PLAN.md.
3. Run tests and type checks. Fix ALL errors and warnings.
4. Ensure test coverage is at least 80%.
5. Run a code review and fix ALL issues.
6. Verify that ALL Verification Criteria from .ralph/PRD.md for this task are met. If any are not met, continue until all are satisfied.
If .ralph/PLAN.md is ambiguous, interpret it reasonably and proceed.
Complete the implementation fully; do not ask if you should continue.
If you are blocked, output <promise>BLOCKED</promise> and explain the blocker."""

GUARDRAIL_VERIFY_PROMPT = """@GUARDRAILS.md @.ralph/PRD.md @.ralph/PLAN.md @.ralph/PROGRESS.md @CLAUDE.md
1. Read @GUARDRAILS.md and understand all guardrail rules (they verify PRD tasks, plans, and outcome compliance, not code style).
2. Verify that the completed work, and the way the PRD task and plan specified it, comply with the guardrails.
3. If any guardrail rule is violated (e.g. hardcoded secret, missing verification criterion, prod mocks): apply fixes and list what was fixed. Do not perform a general code-style or lint review.
4. If fully compliant with all guardrails, output <promise>COMPLIANT</promise>.
Do not ask for confirmation. Proceed immediately.
If you are blocked, output <promise>BLOCKED</promise> and explain."""

CLEANUP_PROMPT = """@.ralph/PRD.md @.ralph/PLAN.md @.ralph/PROGRESS.md
1. Update .ralph/PRD.md with the completed task:
   a. CRITICAL: A task CANNOT be marked complete unless ALL of its Verification Criteria checkboxes can be checked off.
   b. If any Verification Criteria are not met, output <promise>BLOCKED</promise> and explain which are missing. Do NOT mark the task complete.
   c. Only if ALL Verification Criteria are satisfied:
      - Mark the main task checkbox as complete [x]
      - Check off all Verification Criteria checkboxes for that task [x]
2. Remove .ralph/PLAN.md.
3. Update .ralph/PROGRESS.md with any learnings.
4. Update @CLAUDE.md with any new features or changes: high-level project context, clear guardrails, key commands and links to deeper docs.
5. Update @README.md only if new user-facing features were added, setup steps changed, or configuration options changed.
If no README updates are needed, skip that step."""

COMMIT_PROMPT = """@.ralph/PRD.md @.ralph/PROGRESS.md
Review the changes and commit with a clear message.
Use format: 'feat: [brief description]' or 'fix: [brief description]' based on the changes.
Review git status, stage all relevant changes, and commit; do not ask for approval.
If there are no changes to commit, output 'No changes to commit' and proceed."""

AGENTS_REFACTOR_PROMPT = """@CLAUDE.md
Refactor CLAUDE.md to follow progressive disclosure principles.

1. **Find contradictions**: Identify instructions that conflict with each other and keep the one best supported by the codebase.
2. **Identify the essentials**: Keep only what belongs in the root CLAUDE.md:
   - One-sentence project description
   - Package manager (if not the default for the language)
   - Non-standard build/typecheck commands
   - Anything truly relevant to every single task
3. **Group the rest**: Organize remaining instructions into logical categories and create one markdown file per group under docs/.
4. **Create the file structure**: a minimal root CLAUDE.md linking to the separate files.
5. **Delete**: instructions that are redundant, too vague to be actionable, or overly obvious."""

SELF_IMPROVEMENT_PROMPT = """@.ralph/PRD.md @.ralph/PROGRESS.md
Analyze the codebase for improvements, but ONLY add CRITICAL and HIGH priority issues as new tasks to .ralph/PRD.md.
1. Review the codebase for code smells, architecture issues, missing functionality, technical debt, security concerns and performance issues.
2. STRICT FILTERING: only document issues that are
   - CRITICAL: security vulnerabilities, data loss risks, production outages
   - HIGH: severe performance issues, security gaps, data integrity issues
   and that have a measurable, documented impact.
3. DO NOT add cosmetic code smells, functionality already tracked in .ralph/PRD.md, or low/medium priority issues.
4. DEDUPLICATION: read .ralph/PRD.md first; update an existing task instead of adding a duplicate.
5. For each finding, add a task to the end of the Tasks section using the existing format:
   - [ ] **Task [N]: [Issue Category] - [Brief Issue Description]**

   **Description:** [issue, location, evidence of impact, suggested approach]

   **Verification Criteria:**
   - [ ] [Specific, measurable criterion]

   **Complexity:** [easy/medium/hard]

   ---
6. If there are no CRITICAL or HIGH priority issues, output 'No critical issues found' and leave .ralph/PRD.md unchanged.
Do not ask for confirmation before adding items."""

UNIT_PROMPTS: dict[Unit, str] = {
    Unit.PLAN: PLANNING_PROMPT,
    Unit.IMPLEMENT: IMPLEMENTATION_PROMPT,
    Unit.GUARDRAIL: GUARDRAIL_VERIFY_PROMPT,
    Unit.CLEANUP: CLEANUP_PROMPT,
    Unit.COMMIT: COMMIT_PROMPT,
    Unit.REFACTOR: AGENTS_REFACTOR_PROMPT,
    Unit.SELF_IMPROVEMENT: SELF_IMPROVEMENT_PROMPT,
}

SAMPLE_PRD = """# Product Requirements Document

## Overview

This PRD outlines the requirements for [PROJECT NAME]. The goal is to [CLEAR DESCRIPTION OF WHAT THIS PRD IS TRYING TO ACCOMPLISH].

## Objectives

- [Primary objective 1]
- [Primary objective 2]

## Tasks

- [ ] **Task 1: [Task Name]**

  **Description:** [Clear description of what needs to be done]

  **Verification Criteria:**
  - [ ] [Specific, measurable criterion 1]
  - [ ] [Specific, measurable criterion 2]

  **Complexity:** [easy/medium/hard]

---

- [ ] **Task 2: [Task Name]**

  **Description:** [Clear description of what needs to be done]

  **Verification Criteria:**
  - [ ] [Specific, measurable criterion 1]
  - [ ] [Specific, measurable criterion 2]

  **Complexity:** [easy/medium/hard]

---

## Notes

- Add any additional context, constraints, or considerations here
"""


def _read_override(path: Path) -> str | None:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return None
    return content if content.strip() else None


def get_system_prompt(project_dir: Path) -> str:
    """Return `.ralph/system_prompt.txt` if present, else the built-in system prompt."""
    return _read_override(project_dir / STATE_DIR_NAME / SYSTEM_PROMPT_FILE) or SYSTEM_PROMPT


def get_unit_prompt(project_dir: Path, unit: Unit) -> str:
    """Return the override prompt for a unit if present, else the built-in one."""
    return _read_override(project_dir / STATE_DIR_NAME / UNIT_PROMPT_FILES[unit]) or UNIT_PROMPTS[unit]


def export_prompts(project_dir: Path) -> tuple[list[Path], bool]:
    """Write every built-in prompt into `.ralph/` for customisation.

    The sample PRD is only written when `.ralph/PRD.md` does not exist yet.

    Returns:
        A tuple of `(written_prompt_paths, sample_prd_written)`.
    """
    state_dir = project_dir / STATE_DIR_NAME
    state_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    system_path = state_dir / SYSTEM_PROMPT_FILE
    system_path.write_text(SYSTEM_PROMPT, encoding="utf-8")
    written.append(system_path)
    for unit, filename in UNIT_PROMPT_FILES.items():
        path = state_dir / filename
        path.write_text(UNIT_PROMPTS[unit], encoding="utf-8")
        written.append(path)

    prd_path = state_dir / PRD_FILE
    if prd_path.exists():
        return written, False
    prd_path.write_text(SAMPLE_PRD, encoding="utf-8")
    return written, True
