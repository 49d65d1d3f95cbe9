"""Global constants for devloop."""

# Build defaults

DEFAULT_ENTRY = "index.py"
DEFAULT_OUTPUT_DIR = "build"
DEFAULT_BUILD_NAME = "server"
BOOTSTRAP_FILENAME = "__devloop_main__.py"
DEFAULT_SOURCE_EXTENSIONS = (".py", ".json", ".toml", ".txt")
DEFAULT_IGNORE_DIRS = (
    "__pycache__",
    ".git",
    ".venv",
    "venv",
    "node_modules",
    ".mypy_cache",
    ".pytest_cache",
)

# Child process environment

DEFAULT_MODE_ENV_VAR = "APP_ENV"
DEVELOPMENT_MODE = "development"
IPC_FD_ENV = "DEVLOOP_IPC_FD"

# Log tagging

HMR_MARKER = "[HMR]"
SERVER_TAG = "[SERVER]"
TAG_SEPARATOR = ": "

# Log gate owners

GATE_OWNER_DEFAULT = "default"
GATE_OWNER_BUILD = "build"
GATE_OWNER_MENU = "menu"

# Terminal control

INTERRUPT_SEQUENCE = b"\x03"
RUNNING_HINT = "Server running, press any key for options"

# Process shutdown timeouts (seconds)

DEFAULT_STOP_TIMEOUT = 5.0
DEFAULT_KILL_TIMEOUT = 2.0
DEFAULT_PORT_FREE_TIMEOUT = 5.0

STREAM_CHUNK_SIZE = 64 * 1024
