"""
API v2 endpoints.
"""

from . import analysis

__all__ = [
    'analysis',
]
