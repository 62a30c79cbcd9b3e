# services/cleanup_service.py
import asyncio
import logging
from datetime import timedelta

from core.config import Settings
from services.upload_service import UploadService

logger = logging.getLogger(__name__)

class CleanupService:
    def __init__(self, upload_service: UploadService, config: Settings):
        self.upload_service = upload_service
        self.interval = config.CLEANUP_INTERVAL_SECONDS
        self.stale_after = timedelta(seconds=config.STALE_SESSION_SECONDS)
        self.retention = timedelta(seconds=config.ARCHIVE_RETENTION_SECONDS)

    async def start_cleanup_scheduler(self):
        """Start the cleanup scheduler"""
        while True:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval)

            except asyncio.CancelledError:
                logger.info("Cleanup scheduler cancelled")
                break
            except Exception as e:
                logger.error(f"Error in cleanup scheduler: {e}")
                await asyncio.sleep(60)  # Wait 1 minute before retrying

    async def run_once(self):
        expired = await self.cleanup_stale_sessions()
        evicted = await self.cleanup_finished_sessions()
        purged = await self.cleanup_archived_sessions()
        return expired, evicted, purged

    async def cleanup_stale_sessions(self) -> int:
        """Abort live sessions nobody has touched for a while"""
        expired = await self.upload_service.expire_stale_sessions(self.stale_after)
        if expired:
            logger.info(f"Aborted {expired} stale upload session(s)")
        return expired

    async def cleanup_finished_sessions(self) -> int:
        """Archive completed and aborted sessions and free their buffers"""
        evicted = await self.upload_service.evict_terminal_sessions(self.stale_after)
        if evicted:
            logger.info(f"Archived {evicted} finished upload session(s)")
        return evicted

    async def cleanup_archived_sessions(self) -> int:
        """Delete archived sessions past the retention period"""
        purged = await self.upload_service.purge_archived_sessions(self.retention)
        if purged:
            logger.info(f"Purged {purged} archived upload session(s)")
        return purged
