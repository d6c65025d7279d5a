"""Test the `ralph` CLI commands end to end with a scripted command worker."""

import json
import shlex
import sys
from pathlib import Path

import pytest
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from ralph_runner import runner
from ralph_runner.state import FileCheckpointStore

AGENT_SCRIPT = """import sys
from pathlib import Path

with open("calls.log", "a", encoding="utf-8") as handle:
    handle.write(f"{len(Path(sys.argv[1]).read_text(encoding='utf-8'))}\\n")
print(sys.argv[2])
"""


def _setup_project(tmp_path: Path, reply: str) -> Path:
    """Create a project whose only worker is a local script printing ``reply``."""
    state_dir = tmp_path / ".ralph"
    state_dir.mkdir()
    (state_dir / "PRD.md").write_text("# Product Requirements Document\n\n## Tasks\n- [ ] Build it\n")
    script = tmp_path / "agent.py"
    script.write_text(AGENT_SCRIPT)
    command = " ".join([shlex.quote(sys.executable), shlex.quote(str(script)), "{prompt_file}", shlex.quote(reply)])
    config = {
        "max_retries": 1,
        "workers": {
            "default": "scripted",
            "providers": {"scripted": {"type": "command", "command": command}},
        },
    }
    (state_dir / "config.yaml").write_text(yaml.safe_dump(config))
    return tmp_path


def _run_main(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        runner.main(argv)
    return int(excinfo.value.code or 0)


def _calls(project_dir: Path) -> list[str]:
    log = project_dir / "calls.log"
    return log.read_text().splitlines() if log.exists() else []


def test_run_completes_when_plan_reports_complete(tmp_path: Path) -> None:
    """A plan reporting completion runs the review units and exits cleanly."""
    project_dir = _setup_project(tmp_path, "<promise>COMPLETE</promise>")

    code = _run_main(["2", "--project-dir", str(project_dir), "--non-interactive"])

    assert code == 0
    assert len(_calls(project_dir)) == 3
    assert FileCheckpointStore.for_project(project_dir).load() is None


def test_run_blocked_keeps_checkpoint(tmp_path: Path) -> None:
    """A blocked plan stops with a failure exit and a resumable checkpoint."""
    project_dir = _setup_project(tmp_path, "<promise>BLOCKED</promise>")

    code = _run_main(["3", "--project-dir", str(project_dir), "--yes"])

    assert code == 1
    assert len(_calls(project_dir)) == 1
    state = FileCheckpointStore.for_project(project_dir).load()
    assert state is not None
    assert state.iteration == 1
    assert state.current_step is not None and state.current_step.number == 1


def test_run_without_prd_fails(tmp_path: Path) -> None:
    """Running before `ralph init` reports the missing PRD."""
    code = _run_main(["1", "--project-dir", str(tmp_path), "--non-interactive"])
    assert code == 1


def test_run_rejects_invalid_iterations() -> None:
    """Iteration counts below one are argument errors."""
    assert _run_main(["0"]) == 2
    assert _run_main(["many"]) == 2


def test_version_flag(capsys: pytest.CaptureFixture[str]) -> None:
    """`--version` prints the package version without needing iterations."""
    assert _run_main(["--version"]) == 0
    assert runner.__version__ in capsys.readouterr().out


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    """A broken `.ralph/config.yaml` stops the run before any worker starts."""
    state_dir = tmp_path / ".ralph"
    state_dir.mkdir()
    (state_dir / "PRD.md").write_text("- [ ] task\n")
    (state_dir / "config.yaml").write_text("workers: [\n")

    assert _run_main(["1", "--project-dir", str(tmp_path), "--non-interactive"]) == 1


def test_init_writes_sample_prd(tmp_path: Path) -> None:
    """`ralph init` without a description writes the sample PRD."""
    assert _run_main(["init", "--project-dir", str(tmp_path)]) == 0
    assert "- [ ]" in (tmp_path / ".ralph" / "PRD.md").read_text()


def test_export_prompts_writes_files(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """`ralph export-prompts` writes the prompt files and a sample PRD."""
    assert _run_main(["export-prompts", "--project-dir", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "Wrote sample PRD" in out
    assert (tmp_path / ".ralph" / "PRD.md").exists()
    assert len(list((tmp_path / ".ralph").glob("*.md"))) > 2


def test_status_without_state_dir(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """`ralph status --json` reports a missing state directory."""
    assert _run_main(["status", "--project-dir", str(tmp_path), "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == {"status": "missing_state_dir"}


def test_status_reports_checkpoint(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """`ralph status --json` includes the checkpoint and open tasks."""
    project_dir = _setup_project(tmp_path, "unused")
    (project_dir / ".ralph" / "ralph-state.txt").write_text("iteration=2\nmax_iterations=4\ncurrent_step=3\n")

    assert _run_main(["status", "--project-dir", str(project_dir), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["checkpoint"]["iteration"] == 2
    assert payload["checkpoint"]["current_step"] == "guardrail"
    assert payload["open_tasks"] == 1
    assert payload["worker"]["name"] == "scripted"
    assert payload["errors"] == []


def test_status_flags_corrupt_checkpoint(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """A corrupt checkpoint is listed as an error with exit code 2."""
    state_dir = tmp_path / ".ralph"
    state_dir.mkdir()
    (state_dir / "ralph-state.txt").write_text("iteration=x\n")

    assert _run_main(["status", "--project-dir", str(tmp_path)]) == 2
    assert "State errors:" in capsys.readouterr().out
