"""Main entry point for the targetflow command line tool."""

import sys

from targetflow.cli import main

if __name__ == "__main__":
    sys.exit(main())
