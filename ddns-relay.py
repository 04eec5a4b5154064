#!/usr/bin/env python3

"""Run from a source checkout without installing.

    ./ddns-relay.py                 start the relay server
    ./ddns-relay.py agent [ARGS]    run the agent (same as ddns-relay-agent)
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from ddns_relay.cli import agent_main, main  # noqa: E402


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "agent":
        sys.exit(agent_main(sys.argv[2:]))
    main()
