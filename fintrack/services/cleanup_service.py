"""
Cleanup service — periodic housekeeping for auth tables.

Nothing in the request path depends on this running: expiry is checked
lazily and locks lapse on their own.  It only keeps tables small.
Schedule ``python -m fintrack.scripts.cleanup`` (cron, k8s CronJob).
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from fintrack.services import account_service, session_service, verification_service

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    sessions_deleted: int = 0
    verification_tokens_deleted: int = 0
    accounts_unlocked: int = 0


async def run_cleanup(db: AsyncSession) -> CleanupReport:
    logger.info("Starting auth cleanup")
    report = CleanupReport(
        sessions_deleted=await session_service.purge_sessions(db),
        verification_tokens_deleted=await verification_service.purge_tokens(db),
        accounts_unlocked=await account_service.unlock_expired_accounts(db),
    )
    await db.commit()
    logger.info(
        "Cleanup completed: %d sessions, %d verification tokens deleted; %d accounts unlocked",
        report.sessions_deleted,
        report.verification_tokens_deleted,
        report.accounts_unlocked,
    )
    return report
