"""
Core modules for the episode pipeline.

This package contains budget enforcement, scheduling, generation,
feedback aggregation and the orchestration that ties them together.
"""
