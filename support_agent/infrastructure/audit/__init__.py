"""
Audit infrastructure for support pipeline outcomes.

Every finished run leaves one append-only activity row for audit and the
daily report.
"""

from support_agent.infrastructure.audit.activity_recorder import ActivityRecorder

__all__ = ["ActivityRecorder"]
