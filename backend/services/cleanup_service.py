# services/cleanup_service.py
import asyncio
import logging
import time

from services.staging_area import StagingArea, StagingSession

logger = logging.getLogger(__name__)


class CleanupService:
    """Removes staging sessions that clients abandoned"""

    def __init__(self, staging: StagingArea, ttl_hours: float = 24, interval_seconds: int = 6 * 60 * 60):
        self.staging = staging
        self.ttl_seconds = ttl_hours * 60 * 60
        self.interval_seconds = interval_seconds

    async def start_cleanup_scheduler(self):
        """Start the cleanup scheduler"""
        while True:
            try:
                await self.cleanup_stale_sessions()
                await asyncio.sleep(self.interval_seconds)

            except asyncio.CancelledError:
                logger.info("Cleanup scheduler cancelled")
                break
            except Exception as e:
                logger.error(f"Error in cleanup scheduler: {e}")
                await asyncio.sleep(60)  # Wait 1 minute before retrying

    @staticmethod
    def last_activity(session: StagingSession) -> float:
        """Newest modification time across the session directory and its files"""
        latest = session.directory.stat().st_mtime
        for entry in session.directory.iterdir():
            try:
                latest = max(latest, entry.stat().st_mtime)
            except FileNotFoundError:
                continue
        return latest

    async def cleanup_stale_sessions(self, now: float = None) -> int:
        """Delete sessions idle for longer than the TTL, returns how many were removed"""
        now = now if now is not None else time.time()
        cleaned_count = 0

        for session in self.staging.sessions():
            try:
                idle_seconds = now - self.last_activity(session)
            except FileNotFoundError:
                # Finished by a request while we were scanning
                continue

            if idle_seconds > self.ttl_seconds:
                session.destroy()
                cleaned_count += 1
                logger.info(f"Removed stale staging session {session.content_hash} (idle {idle_seconds / 3600:.1f}h)")

        logger.info(f"Staging cleanup completed. Cleaned {cleaned_count} sessions")
        return cleaned_count
