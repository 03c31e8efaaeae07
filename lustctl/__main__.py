"""
Run an entrypoint by command name, e.g. `python -m lustctl install --force`.
"""

import sys

from lustctl.scripts import service  # noqa: F401
from lustctl.scripts.utils import COMMANDS, error


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        error("Usage: python -m lustctl ({}) [OPTIONS...]".format(" | ".join(sorted(COMMANDS))),
              exit=1)
    name = sys.argv.pop(1)
    sys.argv[0] = "lustctl-{}".format(name)
    COMMANDS[name]()


if __name__ == "__main__":
    main()
