#!/usr/bin/env python3
"""
Round Printer - print dispatch agent for POS rounds.

Runs the dispatch engine and the operator API; see round_printer.cli for flags.
"""

import sys

from round_printer.cli import main

if __name__ == "__main__":
    sys.exit(main())
