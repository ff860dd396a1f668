"""Supervisor exception hierarchy."""


class ResteepError(Exception):
    """Base error type for all supervisor and child-runtime failures."""


class ResteepStructuredError(ResteepError):
    """Error carrying stable taxonomy class/code fields."""

    def __init__(self, message: str, *, error_class: str, error_code: str):
        super().__init__(message)
        self.error_class = error_class
        self.error_code = error_code


class SetupError(ResteepStructuredError):
    """Supervisor could not start; never retried."""


class TerminalStateError(SetupError):
    """Raised when the controlling terminal attributes cannot be read."""

    def __init__(self, message: str = "failed to get terminal state"):
        super().__init__(message, error_class="setup", error_code="SETUP_TERMINAL_STATE")


class WatcherSetupError(SetupError):
    """Raised when the source tree cannot be registered for watching."""

    def __init__(self, message: str = "failed to watch source tree"):
        super().__init__(message, error_class="setup", error_code="SETUP_WATCHER")


class StatePipeError(SetupError):
    """Raised when the state hand-off pipe cannot be created."""

    def __init__(self, message: str = "failed to create state pipe"):
        super().__init__(message, error_class="setup", error_code="SETUP_STATE_PIPE")


class ToolchainNotFoundError(SetupError):
    """Raised when no Python interpreter is available to run the target."""

    def __init__(self, message: str = "python interpreter not found"):
        super().__init__(message, error_class="setup", error_code="SETUP_TOOLCHAIN")


class ConfigError(SetupError):
    """Raised for unreadable or invalid supervisor configuration."""

    def __init__(self, message: str = "invalid configuration"):
        super().__init__(message, error_class="setup", error_code="SETUP_CONFIG")


class SpawnError(ResteepStructuredError):
    """Raised when the child process cannot be created."""

    def __init__(self, message: str = "failed to start subprocess"):
        super().__init__(message, error_class="spawn", error_code="SPAWN_FAILED")


class ProtocolError(ResteepStructuredError):
    """State hand-off protocol failure."""

    def __init__(self, message: str, *, error_code: str = "PROTOCOL_ERROR"):
        super().__init__(message, error_class="protocol", error_code=error_code)


class FrameEOFError(ProtocolError, EOFError):
    """Stream ended before a complete frame was read; the peer closed."""

    def __init__(self, message: str = "stream ended mid-frame"):
        super().__init__(message, error_code="PROTOCOL_FRAME_EOF")


class StateDecodeError(ProtocolError):
    """Raised when the inherited state variable is not valid base64."""

    def __init__(self, message: str = "failed to decode state variable"):
        super().__init__(message, error_code="PROTOCOL_STATE_DECODE")


class ChannelClosedError(ProtocolError):
    """Raised when the supervisor-lifetime state channel reaches end of stream."""

    def __init__(self, message: str = "subprocess pipe closed unexpectedly"):
        super().__init__(message, error_code="PROTOCOL_CHANNEL_CLOSED")
