"""Program entry point: supervise when launched directly, run when supervised."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Mapping

from resteep.agent.runtime import RunFn, is_child, run_child
from resteep.supervisor.config import load_config
from resteep.supervisor.inplace import InPlaceReloader
from resteep.supervisor.logs import configure_logging
from resteep.supervisor.loop import Supervisor
from resteep.supervisor.models import ReloadStrategy


def resteep(
    run: RunFn,
    *,
    target: str | Path,
    strategy: ReloadStrategy | str = ReloadStrategy.SUBPROCESS,
    environ: Mapping[str, str] | None = None,
    **config_overrides: Any,
) -> int:
    """Run `run(state, channel)` under hot reload.

    `target` is the script (usually `__file__`) re-run on every restart. In
    the supervising process this blocks until the user quits; in the child it
    calls `run` once with the state the previous instance last sent.

        if __name__ == "__main__":
            raise SystemExit(resteep(main, target=__file__))
    """
    environ = os.environ if environ is None else environ
    strategy = ReloadStrategy(strategy)
    if strategy is ReloadStrategy.SUBPROCESS and is_child(environ):
        return run_child(run, environ=environ)

    config = load_config(target=Path(target), strategy=strategy, **config_overrides)
    configure_logging(config.log_file)
    if strategy is ReloadStrategy.EXEC:
        return asyncio.run(InPlaceReloader(config, run, environ=environ).run())
    return asyncio.run(Supervisor(config).run())
