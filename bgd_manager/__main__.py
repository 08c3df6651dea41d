"""bgd-manager CLI entry point."""

import sys

from bgd_manager.cli import main

if __name__ == "__main__":
    sys.exit(main())
