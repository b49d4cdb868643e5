"""
auth/audit.py -- Audit & Anomaly Detector.

Append-only ledger of authentication events plus simple read-side threshold
heuristics. Written synchronously inside the request that produced the event,
so entries for one user keep the order in which they were generated.

Failure policy:
  record() never raises. A broken audit store must not block or weaken
  authentication, so write errors are logged at WARNING and swallowed
  (fail-open on the logging path). The authentication decision itself is made
  by the caller and stays fail-closed.

Heuristics (thresholds come from core.config.AnomalyThresholds):
  failed_login_burst  -- more than N LoginFailed for one email in the window
  ip_email_spread     -- one IP failing against more than M distinct emails
  Either appends one synthetic SuspiciousActivity entry referencing the
  triggering LoginFailed. A rule stays quiet for the same email / IP while
  its previous flag is still inside the window.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from auth.models import AuthAuditLog, AuthEventType, GeoLocation
from auth.store import CredentialStore
from core.config import AnomalyThresholds

logger = logging.getLogger("taskflow.audit")

MAX_HISTORY_LIMIT = 100

RULE_FAILED_LOGIN_BURST = "failed_login_burst"
RULE_IP_EMAIL_SPREAD = "ip_email_spread"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coarse_location(ip: str | None) -> GeoLocation | None:
    """Country-level location for an IP, or None for local/unparseable addresses.

    No geolocation database is wired in yet, so public addresses resolve to
    country "Unknown".
    """
    if not ip:
        return None
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return None
    if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_unspecified:
        return None
    return GeoLocation(country="Unknown")


class AuditLog:
    """Event sink and anomaly queries over the auth_audit_logs table.

    Usage:
        audit = AuditLog(store, settings.anomaly)
        audit.record(AuthEventType.LOGIN_FAILED, False, email="a@x.com", ip="1.2.3.4")
        audit.recent_failed_logins("a@x.com", timedelta(minutes=15))
    """

    def __init__(
        self,
        store: CredentialStore,
        thresholds: AnomalyThresholds,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self.thresholds = thresholds
        self._clock = clock

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def record(
        self,
        event_type: AuthEventType,
        success: bool,
        user_id: int | None = None,
        email: str | None = None,
        failure_reason: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuthAuditLog | None:
        """Append one entry. Returns it, or None if the write failed."""
        try:
            entry = self._append(
                AuthAuditLog(
                    event_type=event_type,
                    success=success,
                    user_id=user_id,
                    email=email,
                    failure_reason=failure_reason,
                    ip_address=ip,
                    user_agent=user_agent,
                    metadata=dict(metadata or {}),
                    location=coarse_location(ip),
                )
            )
            if event_type is AuthEventType.LOGIN_FAILED:
                self._evaluate_failed_login(entry)
            return entry
        except Exception:
            logger.warning("Failed to write audit log for event %s", event_type.value, exc_info=True)
            return None

    def _append(self, entry: AuthAuditLog) -> AuthAuditLog:
        entry.created_at = self._clock()
        entry.id = self._store.insert_audit_log(entry)
        logger.info(
            "Audit %s success=%s user=%s ip=%s",
            entry.event_type.value,
            entry.success,
            entry.user_id if entry.user_id is not None else "unknown",
            entry.ip_address or "unknown",
        )
        return entry

    def _evaluate_failed_login(self, trigger: AuthAuditLog) -> None:
        rule = self._failed_login_rule(trigger)
        if rule is None:
            return
        self._append(
            AuthAuditLog(
                event_type=AuthEventType.SUSPICIOUS_ACTIVITY,
                success=False,
                user_id=trigger.user_id,
                email=trigger.email,
                failure_reason="Multiple failed login attempts detected",
                ip_address=trigger.ip_address,
                user_agent=trigger.user_agent,
                metadata={
                    "original_event": trigger.event_type.value,
                    "rule": rule,
                    "trigger_id": trigger.id,
                },
                location=trigger.location,
            )
        )
        logger.warning("Suspicious activity (%s) for email=%s ip=%s", rule, trigger.email, trigger.ip_address)

    def _failed_login_rule(self, trigger: AuthAuditLog) -> str | None:
        t = self.thresholds
        now = self._clock()

        if trigger.email:
            since = now - timedelta(minutes=t.failed_login_window_minutes)
            failures = self._store.list_audit_logs(
                email=trigger.email, event_types=[AuthEventType.LOGIN_FAILED], since=since
            )
            if len(failures) > t.failed_login_limit and not self._already_flagged(
                RULE_FAILED_LOGIN_BURST, since, email=trigger.email
            ):
                return RULE_FAILED_LOGIN_BURST

        if trigger.ip_address:
            since = now - timedelta(minutes=t.ip_window_minutes)
            emails = self._store.distinct_audit_values(
                "email", ip_address=trigger.ip_address, event_types=[AuthEventType.LOGIN_FAILED], since=since
            )
            if len(emails) > t.ip_email_limit and not self._already_flagged(
                RULE_IP_EMAIL_SPREAD, since, ip=trigger.ip_address
            ):
                return RULE_IP_EMAIL_SPREAD

        return None

    def _already_flagged(self, rule: str, since: datetime, email: str | None = None, ip: str | None = None) -> bool:
        flags = self._store.list_audit_logs(
            email=email, ip_address=ip, event_types=[AuthEventType.SUSPICIOUS_ACTIVITY], since=since
        )
        return any(f.metadata.get("rule") == rule for f in flags)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def recent_failed_logins(self, email: str, window: timedelta) -> list[AuthAuditLog]:
        """LoginFailed entries for `email` inside the trailing window, newest first."""
        return self._store.list_audit_logs(
            email=email, event_types=[AuthEventType.LOGIN_FAILED], since=self._clock() - window
        )

    def has_suspicious_activity(self, user_id: int) -> bool:
        """True if the user was flagged recently or has logged in from too many origins.

        Breadth of origin counts distinct IPs of recorded successful logins
        inside the window. An attempt that has not completed a login adds
        nothing.
        """
        t = self.thresholds
        since = self._clock() - timedelta(hours=t.suspicious_window_hours)

        flagged = self._store.list_audit_logs(
            user_id=user_id, event_types=[AuthEventType.SUSPICIOUS_ACTIVITY], since=since, limit=1
        )
        if flagged:
            return True

        origins = self._store.distinct_audit_values(
            "ip_address", user_id=user_id, event_types=[AuthEventType.LOGIN], success=True, since=since
        )
        return len(origins) > t.distinct_ip_limit

    def user_history(self, user_id: int, limit: int = MAX_HISTORY_LIMIT) -> list[AuthAuditLog]:
        return self._store.list_audit_logs(user_id=user_id, limit=_cap(limit))

    def by_ip(self, ip: str, limit: int = MAX_HISTORY_LIMIT) -> list[AuthAuditLog]:
        return self._store.list_audit_logs(ip_address=ip, limit=_cap(limit))

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_older_than(self, days: int) -> int:
        """Delete entries older than `days`. The only way entries ever leave the ledger."""
        removed = self._store.delete_audit_logs_before(self._clock() - timedelta(days=days))
        logger.info("Purged %d audit log entries older than %d days", removed, days)
        return removed


def _cap(limit: int) -> int:
    return max(1, min(limit, MAX_HISTORY_LIMIT))
