"""
Core module - configuration, logging, error taxonomy.

Components:
- config: Settings management via pydantic-settings
- errors: Storage exceptions and typed memory issues
- logging: Structured logging setup
"""

from cortex.core.config import Settings
from cortex.core.errors import IssueKind, MemoryIssue, WriteResult

__all__ = ["Settings", "IssueKind", "MemoryIssue", "WriteResult"]
