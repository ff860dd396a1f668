"""Fixed contract values shared by the supervisor and its child processes."""

STATE_ENV_VAR = "RESTEEP_STATE"
STATE_FD = 3

FRAME_HEADER_SIZE = 4
MAX_FRAME_SIZE = 2**32 - 1

DEFAULT_SOURCE_EXTENSIONS = (".py",)
DEFAULT_EXCLUDED_DIRS = (
    "vendor",
    "__pycache__",
    "node_modules",
    "venv",
    "site-packages",
)

EXIT_HINT = "Press Ctrl-C to exit or save a file to reload."
