"""
Core modules for tokenwatch.

This package contains event parsing, deduplication, aggregation, session
block segmentation, live monitoring and status line computation.
"""
