"""Background maintenance: expiry sweeps and security log rotation."""

import logging
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler

from auth.config import AuthConfig
from auth.security_logger import SecurityLogger
from auth.session import SessionManager
from auth.tokens import TokenIssuer

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Runs the expiry sweeps and log rotation in a background thread.

    Sweeps only delete rows that are already unusable; correctness never
    depends on them running.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        token_issuer: TokenIssuer,
        security_logger: SecurityLogger,
        config: AuthConfig,
    ):
        self._session_manager = session_manager
        self._token_issuer = token_issuer
        self._security_logger = security_logger
        self._interval_hours = config.session_sweep_interval_hours
        self._rotation_hours = config.security_log_rotation_interval_hours
        self._retention_days = config.security_log_retention_days
        self._archive_path = Path(config.security_log_archive_path)
        self._scheduler = BackgroundScheduler(timezone="UTC")

    def sweep_sessions(self) -> int:
        return self._session_manager.purge_expired()

    def sweep_tokens(self) -> int:
        removed = self._token_issuer.cleanup_expired()
        if removed:
            logger.info(f"Removed {removed} expired one-time tokens")
        return removed

    def rotate_security_log(self) -> int:
        """Move security events past retention into the JSON lines archive."""
        self._archive_path.parent.mkdir(parents=True, exist_ok=True)
        archived = self._security_logger.rotate_logs(self._retention_days, self._archive_path)
        if archived:
            logger.info(f"Archived {archived} security events to {self._archive_path}")
        return archived

    def start(self) -> None:
        self._scheduler.add_job(
            self.sweep_sessions,
            trigger="interval",
            hours=self._interval_hours,
            id="session_expiry_sweep",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.sweep_tokens,
            trigger="interval",
            hours=self._interval_hours,
            id="token_expiry_sweep",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.rotate_security_log,
            trigger="interval",
            hours=self._rotation_hours,
            id="security_log_rotation",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Maintenance scheduler started (sweeps every {self._interval_hours}h, log rotation every {self._rotation_hours}h)")

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Maintenance scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler.running
