"""
jobs/housekeeping.py -- Periodic maintenance.

The application lifespan (api/main.py) calls these on a timer in a worker
thread. Each job is safe to run at any time and any number of times.
"""

from __future__ import annotations

import logging

from audit.models import REFRESH_TOKEN_CLEANUP
from audit.recorder import AuditRecorder
from auth.refresh import RefreshTokenManager

logger = logging.getLogger("aaa.jobs.housekeeping")


def cleanup_expired_refresh_tokens(manager: RefreshTokenManager, recorder: AuditRecorder) -> int:
    """Delete refresh tokens past their expiry and record how many went."""
    removed = manager.cleanup_expired()
    recorder.record_system(REFRESH_TOKEN_CLEANUP, details={"removed": removed})
    logger.info("Refresh token cleanup removed %d row(s)", removed)
    return removed
