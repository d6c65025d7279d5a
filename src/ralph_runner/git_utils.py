"""Provide the git and GitHub CLI helpers used by the runner and the manager."""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from shutil import which
from typing import Optional

from loguru import logger

from .constants import BRANCH_PREFIX, MAX_PR_DESCRIPTION_CHARS, STATE_DIR_NAME
from .errors import PullRequestError, VCSError
from .utils import _truncate, slugify

_BRANCH_TICKET_RE = re.compile(
    r"^" + re.escape(BRANCH_PREFIX)
    + r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})(?:-|$)"
)
_STATE_DIR_IGNORE_FORMS = {STATE_DIR_NAME, f"./{STATE_DIR_NAME}"}


def _run_git(project_dir: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )


def _output_of(result: subprocess.CompletedProcess) -> str:
    return "\n".join(part.strip() for part in (result.stdout, result.stderr) if part and part.strip())


def branch_name_for(ticket_id: str, title: str) -> str:
    slug = slugify(title)
    return f"{BRANCH_PREFIX}{ticket_id}-{slug}" if slug else f"{BRANCH_PREFIX}{ticket_id}"


def ticket_id_from_branch(branch: str) -> Optional[str]:
    """Recover the ticket id from a `linear/<uuid>-<slug>` branch name."""
    match = _BRANCH_TICKET_RE.match(branch or "")
    return match.group(1) if match else None


def current_branch(project_dir: Path) -> Optional[str]:
    result = _run_git(project_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def _git_branch_exists(project_dir: Path, branch: str) -> bool:
    result = _run_git(project_dir, "show-ref", "--verify", "--quiet", f"refs/heads/{branch}")
    return result.returncode == 0


def default_base_branch(project_dir: Path) -> str:
    for candidate in ("main", "master"):
        if _git_branch_exists(project_dir, candidate):
            return candidate
    raise VCSError("Failed to determine base branch (tried 'main' and 'master'): neither branch exists")


def create_branch(project_dir: Path, branch: str, base_branch: Optional[str] = None) -> str:
    """Check out ``branch``, creating it from the base branch when it does not exist.

    Returns:
        The base branch that was used.

    Raises:
        VCSError: If the base branch cannot be determined or checked out.
    """
    base = base_branch or default_base_branch(project_dir)
    if current_branch(project_dir) != base:
        result = _run_git(project_dir, "checkout", base)
        if result.returncode != 0:
            raise VCSError(f"Not on {base} and failed to check it out: {_output_of(result)}")

    result = _run_git(project_dir, "checkout", "-b", branch)
    if result.returncode != 0:
        logger.debug("git checkout -b {} failed, trying existing branch: {}", branch, _output_of(result))
        result = _run_git(project_dir, "checkout", branch)
        if result.returncode != 0:
            raise VCSError(f"Failed to create/checkout branch {branch}: {_output_of(result)}")
    logger.info("Checked out branch {} (base {})", branch, base)
    return base


def _git_last_commit_message(project_dir: Path) -> str:
    result = _run_git(project_dir, "log", "-1", "--pretty=%B")
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def _git_last_commit_files(project_dir: Path) -> list[str]:
    result = _run_git(project_dir, "diff", "--name-only", "HEAD~1", "HEAD")
    if result.returncode != 0:
        result = _run_git(project_dir, "diff", "--name-only")
        if result.returncode != 0:
            return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _git_uncommitted_files(project_dir: Path) -> list[str]:
    result = _run_git(project_dir, "status", "--porcelain")
    if result.returncode != 0:
        return []
    files: list[str] = []
    for line in result.stdout.splitlines():
        # "XY path"
        path = line[3:].strip() if len(line) > 3 else ""
        if path:
            files.append(path)
    return files


def iteration_git_summary(project_dir: Path) -> tuple[str, list[str]]:
    """Last commit message and the files it touched, or uncommitted files when there is no commit."""
    message = _git_last_commit_message(project_dir)
    if message:
        return message, _git_last_commit_files(project_dir)
    return "", _git_uncommitted_files(project_dir)


def _ignore_file_has_entry(path: Path) -> bool:
    if not path.exists():
        return False
    try:
        contents = path.read_text()
    except OSError:
        return False
    lines = {
        line.strip().rstrip("/")
        for line in contents.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    }
    return bool(lines & _STATE_DIR_IGNORE_FORMS)


def _append_ignore_entry(path: Path, ignore_entry: str) -> None:
    contents = ""
    if path.exists():
        contents = path.read_text()
    if contents and not contents.endswith("\n"):
        contents += "\n"
    contents += ignore_entry + "\n"
    path.write_text(contents)


def ensure_state_dir_ignored(project_dir: Path) -> bool:
    """Make sure `.ralph/` is listed in `.gitignore`; returns True when an entry was added."""
    gitignore_path = project_dir / ".gitignore"
    if _ignore_file_has_entry(gitignore_path):
        return False
    try:
        _append_ignore_entry(gitignore_path, f"{STATE_DIR_NAME}/")
    except OSError as exc:
        raise VCSError(f"Unable to update .gitignore: {exc}") from exc
    logger.info("Added {}/ to .gitignore", STATE_DIR_NAME)
    return True


def validate_git_setup(project_dir: Path) -> None:
    """Check that branches can be pushed and PRs opened from this checkout.

    Requires a GitHub remote and an authenticated `gh` CLI, and ensures the
    state directory is git-ignored.

    Raises:
        VCSError: Describing the first problem found.
    """
    result = _run_git(project_dir, "remote", "-v")
    if result.returncode != 0:
        raise VCSError(f"Failed to check git remotes: {_output_of(result)}")
    remotes = result.stdout.strip()
    if not remotes:
        raise VCSError("No git remote configured. Please add a remote with: git remote add origin <url>")
    if "github.com" not in remotes:
        raise VCSError("Git remote does not appear to be GitHub. PR creation requires GitHub")

    if not which("gh"):
        raise VCSError("GitHub CLI (gh) is not installed. Please install it from https://cli.github.com/")
    auth = subprocess.run(
        ["gh", "auth", "status"],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    auth_output = _output_of(auth)
    if auth.returncode != 0:
        raise VCSError(f"GitHub CLI is not authenticated. Please run: gh auth login\nOutput: {auth_output}")
    if "Logged in" not in auth_output:
        raise VCSError("GitHub CLI authentication appears invalid. Please run: gh auth login")

    ensure_state_dir_ignored(project_dir)


def push_branch(project_dir: Path, branch: str) -> None:
    """Push ``branch`` to origin with upstream tracking.

    Raises:
        VCSError: If the push fails for any reason other than being up to date.
    """
    result = _run_git(project_dir, "push", "-u", "origin", branch)
    if result.returncode == 0:
        return
    output = _output_of(result)
    if "Everything up-to-date" in output:
        logger.info("Branch {} is already up to date on remote", branch)
        return
    raise VCSError(f"Failed to push branch {branch}: {output}")


def _gh_pr_url(project_dir: Path, branch: str) -> Optional[str]:
    result = subprocess.run(
        ["gh", "pr", "view", branch, "--json", "url", "--jq", ".url"],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    url = result.stdout.strip() if result.returncode == 0 else ""
    return url or None


def pull_request_body(*, ticket_url: str, description: str, branch: str) -> str:
    parts = [f"Closes Linear ticket: {ticket_url}"]
    if description.strip():
        parts.append("\n## Description")
        parts.append(_truncate(description, MAX_PR_DESCRIPTION_CHARS, "\n\n... (description truncated)"))
    parts.append(f"\n## Branch\n`{branch}`")
    parts.append("\n---\n*This PR was automatically created by Ralph*")
    return "\n".join(parts)


def create_pull_request(
    project_dir: Path,
    *,
    branch: str,
    base_branch: str,
    title: str,
    body: str,
) -> str:
    """Push ``branch`` and open a PR against ``base_branch``; returns the PR URL.

    An already-open PR for the branch is reused.

    Raises:
        VCSError: If the push fails.
        PullRequestError: If the PR cannot be created or found.
    """
    push_branch(project_dir, branch)
    result = subprocess.run(
        ["gh", "pr", "create", "--title", title, "--body", body, "--base", base_branch, "--head", branch],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    output = _output_of(result)
    if result.returncode != 0:
        if "already exists" in output:
            url = _gh_pr_url(project_dir, branch)
            if url:
                logger.info("Pull request already exists: {}", url)
                return url
            raise PullRequestError(f"Pull request already exists for branch {branch}")
        raise PullRequestError(f"Failed to create pull request: {output}")

    for line in result.stdout.splitlines():
        if line.strip().startswith("http"):
            return line.strip()
    url = _gh_pr_url(project_dir, branch)
    if url:
        return url
    raise PullRequestError(f"Pull request for {branch} was created but its URL could not be retrieved")
