"""
Run the patrolwarden CLI.

Usage:
    python -m patrolwarden.interface status
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
