from enum import Enum


class SupervisorState(str, Enum):
    NO_CHILD = "no_child"
    CHILD_RUNNING = "child_running"
    AWAITING_USER_DECISION = "awaiting_user_decision"


class ChildStatus(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class ReloadStrategy(str, Enum):
    SUBPROCESS = "subprocess"
    EXEC = "exec"
