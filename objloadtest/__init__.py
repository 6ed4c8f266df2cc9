from __future__ import annotations

# objloadtest - Object Storage Load Testing Engine
"""
Usage:
    python -m objloadtest init
    python -m objloadtest run
    python -m objloadtest cleanup
"""

__version__ = "1.0.0"
