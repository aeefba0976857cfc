"""
Job-search autopilot.

Discovers postings, scores them against the candidate profile, optionally
auto-applies and keeps the user informed through notifications. Background
work is driven by the task scheduler (see run_scheduler.py).
"""

__version__ = "0.4.0"
