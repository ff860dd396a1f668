"""Child-side runtime: decode inherited state and open the state channel."""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Callable, Mapping, Protocol

from resteep.channel.state_channel import StateSender
from resteep.contracts import STATE_ENV_VAR, STATE_FD
from resteep.errors import ProtocolError, StateDecodeError

logger = logging.getLogger("resteep.agent")


class StateChannel(Protocol):
    def send(self, blob: bytes) -> None: ...

    def close(self) -> None: ...


RunFn = Callable[[bytes, StateChannel], None]


def is_child(environ: Mapping[str, str] | None = None) -> bool:
    """True when this process was started by a supervisor."""
    environ = os.environ if environ is None else environ
    return STATE_ENV_VAR in environ


def load_state(environ: Mapping[str, str] | None = None) -> bytes | None:
    """Decode the inherited state; None when no supervisor set it."""
    environ = os.environ if environ is None else environ
    encoded = environ.get(STATE_ENV_VAR)
    if encoded is None:
        return None
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise StateDecodeError(f"failed to decode {STATE_ENV_VAR}: {exc}") from exc


def run_child(
    run: RunFn,
    *,
    environ: Mapping[str, str] | None = None,
    state_fd: int = STATE_FD,
) -> int:
    """Run the program once with its previous state and a channel back to the supervisor."""
    state = load_state(environ) or b""
    try:
        sender = StateSender(state_fd)
    except OSError as exc:
        raise ProtocolError(
            f"failed to open fd {state_fd} for state updates: {exc}",
            error_code="PROTOCOL_STATE_FD",
        ) from exc
    logger.debug("Child starting with %d bytes of state", len(state))
    with sender:
        run(state, sender)
    return 0
