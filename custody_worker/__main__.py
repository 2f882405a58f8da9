"""
Entry point for running the worker as a module.

Usage:
    python -m custody_worker
"""

from custody_worker.cli import main

if __name__ == "__main__":
    main()
