"""
Entry point for running depaudit as a module.

Usage:
    python -m depaudit --help
    python -m depaudit run . --trigger scheduled
"""

from depaudit.cli import main

if __name__ == "__main__":
    main()
