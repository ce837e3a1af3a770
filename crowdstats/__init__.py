"""
crowdstats - remote dataset aggregation engine for the contributor dashboard.
"""

__version__ = "1.0.0"
