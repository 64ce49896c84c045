#!/usr/bin/env python3
"""
Quorum Admin Console

Operator entry point for actions that bypass quorum: password resets,
manual approval, revocation, recovery overrides and audit verification.

Usage:  python scripts/admin.py [--database-url URL] <command> [args]
        python scripts/admin.py list-users
        python scripts/admin.py reset-password alice
        python scripts/admin.py recovery list
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from quorum.cli import app  # noqa: E402

if __name__ == "__main__":
    app()
