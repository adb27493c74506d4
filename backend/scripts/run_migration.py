#!/usr/bin/env python3
"""
Run the legacy MSSQL -> MongoDB migration.

    python scripts/run_migration.py --list
    python scripts/run_migration.py clients --dry-run
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from services.migration.cli import main

if __name__ == "__main__":
    sys.exit(main())
