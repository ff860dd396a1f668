"""Counter that survives reloads.

Run `python examples/counter.py`, then edit this file: the counter restarts
from where it was instead of from zero.
"""

import struct
import time

from resteep.entry import resteep


def main(state: bytes, channel) -> None:
    count = struct.unpack(">I", state)[0] if len(state) == 4 else 0
    while True:
        print(f"Current state: {count}", flush=True)
        count += 1
        channel.send(struct.pack(">I", count))
        time.sleep(1)


if __name__ == "__main__":
    raise SystemExit(resteep(main, target=__file__))
