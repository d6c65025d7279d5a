"""Task-list (PRD) and guardrail artifacts: counting, generation and extraction."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import (
    GUARDRAILS_FILE,
    INCOMPLETE_TASK_TOKEN,
    PLAN_FILE,
    PRD_FILE,
    PROGRESS_FILE,
    STATE_DIR_NAME,
    TIMEOUT_PRD_CREATION,
)
from .errors import RalphError
from .executor import RetryingStepExecutor
from .prompts import SAMPLE_PRD

PRD_HEADER = "# Product Requirements Document"
GUARDRAILS_HEADER = "# Guardrails"

# Transcript noise that marks the end of a generated document.
_METADATA_MARKERS: tuple[str, ...] = (
    '"session_id"',
    '"total_cost_usd"',
    '"usage"',
    '"modelUsage"',
    '"permission_denials"',
    '"uuid"',
)
_CHATTER_MARKERS: tuple[str, ...] = (
    "saved at",
    "the prd is now",
    "prd saved",
    "ready for development",
    "next steps",
)
_QUESTION_MARKERS: tuple[str, ...] = (
    "could you please",
    "please provide",
    "what kind of",
    "need more",
    "more details",
    "more information",
)
_FENCE_RE = re.compile(r"```[a-zA-Z]*[ \t]*\r?\n(.*?)```", re.DOTALL)
_MIN_DOCUMENT_CHARS = 100

PRD_CREATION_SYSTEM_PROMPT = """You are a supportive product manager creating a comprehensive PRD for an autonomous development loop.

AUTONOMOUS MODE: You are operating in fully autonomous mode.

CRITICAL RULES:
- DO NOT ask follow-up questions
- DO NOT request clarification
- DO NOT ask for confirmation before proceeding
- Make reasonable assumptions about missing details based on best practices
- Complete the PRD fully without asking if you should continue"""

PRD_CREATION_PROMPT_TEMPLATE = """The user wants to build: {description}

Create a comprehensive Product Requirements Document based on this description. DO NOT ask questions; make reasonable assumptions and proceed immediately.

Consider the project overview, target audience, core features in priority order, tech stack, architecture, data management, authentication and security, integrations, constraints and success criteria.

The PRD MUST use exactly this format:

# Product Requirements Document

## Overview
[Brief description of what you're building and why]

## Objectives
- [Primary objective]

## Tasks
- [ ] **Task 1: [Task Name]**

  **Description:** [Clear description of what needs to be done]

  **Verification Criteria:**
  - [ ] [Specific, measurable criterion]

  **Complexity:** [easy/medium/hard]

---

## Notes
- [Additional context]

Tasks must be atomic (one iteration each), verifiable, in dependency order, use "- [ ]" checkboxes and be separated by "---".

Output ONLY the PRD markdown. Start directly with "# Product Requirements Document" and end after the Notes section."""

GUARDRAILS_CREATION_SYSTEM_PROMPT = """You are helping create a GUARDRAILS.md file for a project that uses an autonomous development loop.

AUTONOMOUS MODE: do not ask questions or request confirmation. Analyze the attached project files, infer language, framework, conventions and risks, and output ONLY the raw GUARDRAILS.md content.

GUARDRAILS.md is used to verify PRD tasks and the plans that implement them, not code style. Rules must be concrete constraints that tasks and plans must not violate."""

GUARDRAILS_CREATION_PROMPT = """
Review the attached project files to understand this application.

Generate a complete GUARDRAILS.md with sections such as Requirements and tasks, Security and constraints, Testing, and Documentation and maintenance. Frame each rule as a constraint PRD tasks and implementation plans must not violate.

Start your response directly with "# Guardrails" followed by a short intro paragraph. Output ONLY the markdown content."""

_PROJECT_REFERENCE_FILES: tuple[str, ...] = (
    "README.md",
    "CLAUDE.md",
    "pyproject.toml",
    "requirements.txt",
    "package.json",
    "go.mod",
    "Cargo.toml",
)


def prd_path(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME / PRD_FILE


def plan_path(project_dir: Path) -> Path:
    return project_dir / STATE_DIR_NAME / PLAN_FILE


def guardrails_path(project_dir: Path) -> Path:
    return project_dir / GUARDRAILS_FILE


def count_incomplete_tasks(path: Path) -> int:
    """Count lines holding an unchecked `- [ ]` box; a missing file counts as 0."""
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return 0
    return sum(1 for line in content.splitlines() if INCOMPLETE_TASK_TOKEN in line)


def _is_metadata(line: str) -> bool:
    return any(marker in line for marker in _METADATA_MARKERS)


def _is_chatter(line: str, file_name: str) -> bool:
    lowered = line.lower()
    if any(marker in lowered for marker in _CHATTER_MARKERS):
        return True
    return line.startswith("/") and file_name in line


def extract_document(output: str, header: str, *, file_name: str = PRD_FILE) -> str:
    """Pull a generated markdown document out of worker output.

    Captures from the first line containing ``header`` up to transcript
    metadata or trailing chatter. When that yields too little, falls back to
    the first fenced code block. Returns an empty string when nothing usable
    is found.
    """
    captured: list[str] = []
    in_document = False
    for line in output.splitlines():
        stripped = line.strip()
        if not in_document:
            if header in stripped:
                in_document = True
                captured.append(line)
            continue
        if stripped.startswith("```") or _is_metadata(stripped) or _is_chatter(stripped, file_name):
            break
        captured.append(line)

    document = "\n".join(captured).strip()
    if len(document) > _MIN_DOCUMENT_CHARS:
        return document

    fenced = _FENCE_RE.search(output)
    if fenced:
        return fenced.group(1).strip()
    return ""


def extract_prd(output: str) -> str:
    document = extract_document(output, PRD_HEADER, file_name=PRD_FILE)
    if document:
        return document
    if "## Overview" in output or "## Tasks" in output:
        return output.strip()
    return ""


def generate_prd(executor: RetryingStepExecutor, description: str, *, timeout_seconds: int = TIMEOUT_PRD_CREATION) -> str:
    """Ask the worker for a PRD built from ``description`` and return its markdown.

    Raises:
        WorkerError: The worker run itself failed.
        RalphError: The output did not contain a PRD.
    """
    result, _ = executor.run_prompt(
        name="prd",
        label="PRD creation",
        system_prompt=PRD_CREATION_SYSTEM_PROMPT,
        prompt=PRD_CREATION_PROMPT_TEMPLATE.format(description=description),
        timeout_seconds=timeout_seconds,
    )
    document = extract_prd(result.response_text)
    if document:
        return document
    lowered = result.response_text.lower()
    if any(marker in lowered for marker in _QUESTION_MARKERS):
        raise RalphError(
            "PRD creation failed: the worker asked questions instead of writing a PRD. "
            "Provide a more detailed description."
        )
    raise RalphError(f"Failed to extract a PRD from worker output ({len(result.response_text)} characters)")


def write_prd(project_dir: Path, content: str) -> Path:
    path = prd_path(project_dir)
    if path.exists():
        logger.warning("{} already exists and will be overwritten", path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content.rstrip("\n") + "\n", encoding="utf-8")
    return path


def reset_progress_files(project_dir: Path) -> None:
    """Remove plan/progress files left over from an earlier run."""
    state_dir = project_dir / STATE_DIR_NAME
    for path in (state_dir / PROGRESS_FILE, state_dir / PLAN_FILE, project_dir / PROGRESS_FILE, project_dir / PLAN_FILE):
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove {}: {}", path, exc)


def init_project(
    project_dir: Path,
    description: Optional[str] = None,
    executor: Optional[RetryingStepExecutor] = None,
) -> tuple[Path, str]:
    """Prepare `.ralph/` for a fresh run.

    With a description the PRD is generated by the worker (``executor`` is
    then required); otherwise the sample PRD is written unless one exists.

    Returns:
        A tuple of `(prd_path, status)` where status is `generated`, `created` or `existing`.
    """
    (project_dir / STATE_DIR_NAME).mkdir(parents=True, exist_ok=True)
    reset_progress_files(project_dir)

    if description:
        if executor is None:
            raise RalphError("A worker is required to generate a PRD from a description")
        return write_prd(project_dir, generate_prd(executor, description)), "generated"

    path = prd_path(project_dir)
    if path.exists():
        return path, "existing"
    path.write_text(SAMPLE_PRD, encoding="utf-8")
    return path, "created"


def create_guardrails(project_dir: Path, executor: RetryingStepExecutor) -> tuple[Path, bool]:
    """Generate GUARDRAILS.md from the project's top-level files.

    Returns:
        A tuple of `(path, created)`; `created` is False when the file already existed.

    Raises:
        RalphError: No reference files exist or no document could be extracted.
    """
    path = guardrails_path(project_dir)
    if path.exists():
        return path, False

    refs = [f"@{name}" for name in _PROJECT_REFERENCE_FILES if (project_dir / name).exists()]
    if not refs:
        raise RalphError(
            "No project files found (README.md, CLAUDE.md, pyproject.toml, package.json, ...); "
            "add at least one so the worker can analyze the project"
        )

    result, _ = executor.run_prompt(
        name="guardrails",
        label="Guardrails creation",
        system_prompt=GUARDRAILS_CREATION_SYSTEM_PROMPT,
        prompt=" ".join(refs) + GUARDRAILS_CREATION_PROMPT,
        timeout_seconds=TIMEOUT_PRD_CREATION,
    )
    document = extract_document(result.response_text, GUARDRAILS_HEADER, file_name=GUARDRAILS_FILE)
    if not document:
        raise RalphError(
            f"Could not extract GUARDRAILS.md from worker output ({len(result.response_text)} characters)"
        )
    path.write_text(document + "\n", encoding="utf-8")
    return path, True
