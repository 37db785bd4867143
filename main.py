#!/usr/bin/env python3
"""
Development launcher for ipcert.

Runs the CLI straight from a checkout, e.g.:

    sudo ./main.py -i 203.0.113.10 -e admin@example.com
"""

import sys

from ipcert.cli import main

if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
