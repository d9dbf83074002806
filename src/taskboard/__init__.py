"""Taskboard persistence core.

Failure classification, retry/recovery/degradation, and dense sibling
ordering for boards, columns and tasks.
"""

__version__ = "0.1.0"
