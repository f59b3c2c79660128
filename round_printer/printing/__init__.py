"""
Printing subsystem for Round Printer.

- render: PrintableRound -> immutable printer instructions (pure)
- transmit: replay instructions on a python-escpos printer

For convenience, common functions are re-exported for easy import.
"""

from .render import *
from .transmit import *
