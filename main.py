#!/usr/bin/env python3
"""
AlumChat - XMPP console client

Main entry point for running from a source checkout.
"""

import sys
from pathlib import Path

# Add project root to path for the alumchat package
sys.path.insert(0, str(Path(__file__).parent))

from alumchat.cli import run  # noqa: E402

if __name__ == '__main__':
    run()
