STATE_DIR_NAME = ".ralph"
STATE_FILE = "ralph-state.txt"
MANAGER_STATE_FILE = "manager-state.txt"
CONFIG_FILE = "config.yaml"
LOCK_FILE = ".lock"
RUNS_DIR = "runs"

PRD_FILE = "PRD.md"
PLAN_FILE = "PLAN.md"
PROGRESS_FILE = "PROGRESS.md"
GUARDRAILS_FILE = "GUARDRAILS.md"  # lives at the project root, not under .ralph

DEFAULT_MAX_RETRIES = 3
DEFAULT_SELF_IMPROVEMENT_EVERY = 1
WINDOWS_LOCK_BYTES = 4096

# Seconds per unit.
TIMEOUT_PLANNING = 1800
TIMEOUT_IMPLEMENTATION = 3600
TIMEOUT_CLEANUP = 900
TIMEOUT_GUARDRAIL = 900
TIMEOUT_SELF_IMPROVEMENT = 1800
TIMEOUT_COMMIT = 300
TIMEOUT_PRD_CREATION = 600

MARKER_BLOCKED = "<promise>BLOCKED</promise>"
MARKER_COMPLETE = "<promise>COMPLETE</promise>"
MARKER_COMPLIANT = "<promise>COMPLIANT</promise>"

INCOMPLETE_TASK_TOKEN = "- [ ]"

# Linear
LINEAR_API_URL = "https://api.linear.app/graphql"
LINEAR_HTTP_TIMEOUT_SECONDS = 30
LINEAR_STATE_TODO = "Todo"
LINEAR_STATE_IN_PROGRESS = "In Progress"
LINEAR_STATE_DONE = "Done"
LINEAR_PRIORITY_LABELS = {
    0: "No priority",
    1: "Urgent",
    2: "High",
    3: "Medium",
    4: "Low",
}
DEFAULT_POLL_SECONDS = 60
BRANCH_PREFIX = "linear/"
MAX_PR_DESCRIPTION_CHARS = 5000
MAX_FILES_IN_PROGRESS_COMMENT = 10

ERROR_CATEGORY_TIMEOUT = "timeout"
ERROR_CATEGORY_AUTH = "authentication"
ERROR_CATEGORY_RATE_LIMIT = "rate_limit"
ERROR_CATEGORY_NETWORK = "network"
ERROR_CATEGORY_API = "api_error"
ERROR_CATEGORY_NOT_FOUND = "not_found"
ERROR_CATEGORY_UNKNOWN = "unknown"

# Shown to the operator when a run stops without completing.
STOP_RESOLUTION_STEPS = {
    "blocked": [
        "Read the agent output above for the reported blocker",
        "Resolve it (edit .ralph/PRD.md, .ralph/PLAN.md or the code) and rerun with the same budget",
        "The checkpoint was kept, so the run resumes at the blocked unit",
    ],
    "iteration_limit": [
        "Review .ralph/PRD.md for the remaining '- [ ]' tasks",
        "Rerun with a larger iteration budget to continue",
    ],
    ERROR_CATEGORY_TIMEOUT: [
        "The unit timed out on every attempt",
        "Raise the timeout under 'timeouts' in .ralph/config.yaml or split the task in .ralph/PRD.md",
        "The checkpoint was kept, so the run resumes at the same unit",
    ],
    ERROR_CATEGORY_AUTH: [
        "Authenticate the worker CLI (for example: claude auth login)",
        "Rerun; the checkpoint was kept",
    ],
}
