"""Allow ``python -m kvmdisk``."""

import sys

from kvmdisk.cli import main

if __name__ == "__main__":
    sys.exit(main())
