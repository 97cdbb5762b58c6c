"""
Periodic cleanup. The subsystem starts no timers of its own; the host process
(bot scheduler, cron, or the web app's background loop) calls run_cleanup().
"""
import logging
from dataclasses import dataclass

from drivebot_auth.services import AuthServices

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    rate_limit_counters: int
    login_locks: int
    security_events: int
    kv_entries: int


def run_cleanup(services: AuthServices) -> CleanupReport:
    report = CleanupReport(
        rate_limit_counters=services.rate_limiter.cleanup_expired(),
        login_locks=services.login_guard.cleanup(),
        security_events=services.events.cleanup(),
        kv_entries=services.kv_store.purge_expired(),
    )
    logger.info(
        "Cleanup: rate_limit_counters=%s login_locks=%s security_events=%s kv_entries=%s",
        report.rate_limit_counters,
        report.login_locks,
        report.security_events,
        report.kv_entries,
    )
    return report
