"""Constants for stet."""

# Ollama defaults
DEFAULT_MODEL = "qwen3-coder:30b"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
DEFAULT_CONTEXT_LIMIT = 32768
DEFAULT_WARN_THRESHOLD = 0.9
DEFAULT_TEMPERATURE = 0.2
DEFAULT_NUM_CTX = 32768

# Default timeout for LLM queries (in seconds)
DEFAULT_LLM_TIMEOUT = 300

# Keep-alive hints sent with each generate call
KEEP_ALIVE_DURING_RUN = -1  # keep the model loaded between hunks
KEEP_ALIVE_AFTER_RUN = 0  # unload once the last hunk is done

# Pipeline sizing
DEFAULT_PREPARE_WORKERS = 2
DEFAULT_PREPARE_BUFFER_SIZE = 5

# Token budgeting
DEFAULT_RESPONSE_RESERVE = 2048
MAX_EXPAND_TOKENS = 4096
MAX_RULE_TOKENS = 1000
RAG_HARD_CAP_TOKENS = 65536
RAG_HARD_CAP_CONTEXT = 65536

# Symbol lookup
DEFAULT_RAG_MAX_DEFINITIONS = 10
DEFAULT_CALL_GRAPH_CALLERS = 3
DEFAULT_CALL_GRAPH_CALLEES = 3
RESOLVER_TIMEOUT = 5.0
MAX_SYMBOL_CANDIDATES = 30

# Session and history
PROMPT_CONTEXT_MAX_BYTES = 4096
MAX_PROMPT_SHADOWS = 20
PROMPT_SHADOWS_IN_PROMPT = 5
MAX_SHADOW_CONTEXT_CHARS = 512
DEFAULT_HISTORY_MAX_RECORDS = 1000
SUPPRESSION_MAX_EXAMPLES = 30
SUPPRESSION_MAX_TOKENS = 8192
DEFAULT_SUPPRESSION_HISTORY_COUNT = 5

# Hunk expansion
MAX_EXPAND_FILE_BYTES = 1 << 20

# Critic
CRITIC_MAX_HUNK_CHARS = 4096

# Finding IDs
SHORT_ID_LENGTH = 7
MIN_ID_PREFIX_LENGTH = 4

# Git
NOTES_REF = "refs/notes/stet"
WORKTREE_PREFIX = "stet-"

# State directory layout
STATE_DIR_NAME = ".review"
SESSION_FILE_NAME = "session.json"
LOCK_FILE_NAME = "session.lock"
HISTORY_FILE_NAME = "history.jsonl"
OPTIMIZED_PROMPT_FILE_NAME = "system_prompt_optimized.txt"
CONFIG_FILE_NAME = "config.toml"

# Scope filter defaults
DEFAULT_EXCLUDE_PATTERNS = (
    "*.pb.go",
    "*_generated.go",
    "*.min.js",
    "package-lock.json",
    "go.sum",
    "vendor/*",
    "coverage/*",
)
