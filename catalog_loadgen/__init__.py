"""
Load generator for the product catalog API.

This package ramps virtual users up and down along staged concurrency
profiles, drives each of them through the create/read/list/update/patch/delete
workflow, and judges the collected checks and request durations against
latency thresholds at the end of the run.
"""

from .main import main

__all__ = ["main"]
