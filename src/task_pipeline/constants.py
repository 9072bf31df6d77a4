STATE_DIR_NAME = ".bot"
CONTROL_DIR_NAME = ".control"
PROCESSES_DIR = "processes"
LOCKS_DIR = "locks"
RUNS_DIR = "runs"
WORKTREES_DIR = "worktrees"
WORKTREE_MAP_FILE = "worktrees.json"
GIT_LOCK_FILE = "git.lock"
SETTINGS_FILE = "settings.yaml"
PROMPTS_DIR = "prompts"
WORKSPACE_DIR = "workspace"
TASKS_DIR = "tasks"
PRODUCT_DIR = "product"
TASK_GROUPS_FILE = "task-groups.json"
TASK_GROUPS_DONE_FILE = "task-groups.done.json"

SIGNAL_SUFFIX = ".signal"
SIGNAL_STOP = "stop"
SIGNAL_PAUSE = "pause"
SIGNAL_RESUME = "resume"
SIGNAL_ANALYSING = "analysing"
SIGNAL_STOP_ANALYSIS = "stop-analysis"
KNOWN_SIGNALS = (
    SIGNAL_STOP,
    SIGNAL_PAUSE,
    SIGNAL_RESUME,
    SIGNAL_ANALYSING,
    SIGNAL_STOP_ANALYSIS,
)

DEFAULT_MODEL = "sonnet"
DEFAULT_AGENT_COMMAND = (
    "claude -p - --output-format stream-json --verbose "
    "--model {model} --session-id {session_id} --dangerously-skip-permissions"
)
DEFAULT_AGENT_TIMEOUT_SECONDS = 3600
DEFAULT_MAX_RETRIES_PER_TASK = 2
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_MAX_RATE_LIMIT_WAITS = 10
DEFAULT_TASK_POLL_SECONDS = 5
DEFAULT_BETWEEN_TASKS_SECONDS = 3
DEFAULT_TICK_SECONDS = 1
DEFAULT_ACTIVITY_WRITE_ATTEMPTS = 3
DEFAULT_ACTIVITY_BACKOFF_SECONDS = 0.05

RATE_LIMIT_MIN_SECONDS = 30
RATE_LIMIT_FLOOR_SECONDS = 60
RATE_LIMIT_RESET_BUFFER_SECONDS = 30

BRANCH_PREFIX = "task/"

SKIP_REASON_MAX_RETRIES = "max-retries"
SKIP_REASON_NON_RECOVERABLE = "non-recoverable"
SKIP_REASON_RATE_LIMITED = "rate-limited"
SKIP_REASON_WORKTREE = "worktree-failed"
MERGE_CONFLICT_QUESTION_ID = "merge-conflict"

# Exit codes that mean the agent binary itself is unusable.
NON_RECOVERABLE_EXIT_CODES = (126, 127)
TIMEOUT_EXIT_CODE = 124
