"""
depfarm: multi-repository dependency manager.
"""

__version__ = "1.0.0"
