"""
Web module for Round Printer.

Exposes blueprints for:
- Health endpoint: health_bp
- Operator JSON API: api_bp
"""

from .api import api_bp
from .health import health_bp

__all__ = ["api_bp", "health_bp"]
