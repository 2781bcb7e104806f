"""
Alerting system for change detection notifications.

This module provides:
- Log-based alerting for detected changes
- Hand-off of a composed Notification to an external notifier
- Hourly rate limiting and severity filtering
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

import structlog

from portal.errors import CacheCorrupt, NotificationError
from storage.files import atomic_write_json, read_json
from .models import AlertConfig, ChangeEvent, ChangeKind, ChangeSeverity, Notification, SEVERITY_ORDER

logger = structlog.get_logger(__name__)

SUBJECT_PREFIX = "Stine Notifier"


class Notifier(Protocol):
    """Delivers notifications, e.g. by email."""

    async def send(self, notification: Notification) -> None:
        ...


class AlertManager:
    """Manager for handling alerts and notifications."""

    def __init__(
        self,
        alert_config: AlertConfig,
        notifier: Optional[Notifier] = None,
        history_file: Optional[Union[str, Path]] = None
    ):
        """
        Initialize alert manager.

        Args:
            alert_config: Alert configuration
            notifier: Optional transport for composed notifications
            history_file: Where alert times are kept between invocations
        """
        self.config = alert_config
        self.notifier = notifier
        self.history_file = Path(history_file) if history_file else None
        self.logger = logger.bind(component="alert_manager")
        self.alert_history: List[datetime] = self._load_history()

    async def process_changes(self, changes: List[ChangeEvent]) -> Optional[Notification]:
        """
        Filter `changes`, log an alert and hand it to the notifier.

        Returns:
            The notification that was sent, or None if nothing qualified

        Raises:
            NotificationError: if the hourly limit is reached or the notifier
                fails to deliver; the changes are still pending
        """
        if not self.config.enabled:
            self.logger.debug("Alerting is disabled")
            return None

        alert_changes = self._filter_changes_by_severity(changes, self.config.min_severity_for_log)
        if not alert_changes:
            self.logger.info("No changes to alert on", total_changes=len(changes))
            return None

        if not self._check_rate_limit():
            self.logger.warning("Alert rate limited", changes_count=len(alert_changes))
            raise NotificationError(
                f"alert limit of {self.config.max_alerts_per_hour} per hour reached, deferring {len(alert_changes)} changes"
            )

        notification = self.compose(alert_changes)

        if self.config.log_enabled:
            self.logger.warning(
                "Change detection alert",
                subject=notification.subject,
                message=notification.body,
                changes_count=len(alert_changes)
            )

        if self.notifier is not None:
            try:
                await self.notifier.send(notification)
            except Exception as e:
                self.logger.error("Failed to deliver notification", subject=notification.subject, error=str(e))
                raise NotificationError(f"could not deliver \"{notification.subject}\": {e}") from e

        self._update_alert_history()
        self.logger.info(
            "Processed change alerts",
            total_changes=len(changes),
            alerted_changes=len(alert_changes)
        )
        return notification

    def compose(self, changes: List[ChangeEvent]) -> Notification:
        """Build subject and body for `changes`."""
        kinds = {change.key.kind for change in changes}
        started = [c for c in changes if c.change_kind == ChangeKind.PERIOD_STARTED]

        if len(started) == len(changes) == 1:
            subject = f"{SUBJECT_PREFIX}: {started[0].summary}"
        elif len(kinds) == 1:
            kind = next(iter(kinds)).value.replace("_", " ")
            subject = f"{SUBJECT_PREFIX} - {kind} update ({len(changes)} changes)"
        else:
            subject = f"{SUBJECT_PREFIX} - {len(changes)} changes"

        lines = [f"Detected {len(changes)} changes:"]
        for change in changes:
            lines.append(f"- {change.summary} (severity: {change.severity.value})")

        return Notification(subject=subject, body="\n".join(lines), events=list(changes))

    def _filter_changes_by_severity(
        self,
        changes: List[ChangeEvent],
        min_severity: ChangeSeverity
    ) -> List[ChangeEvent]:
        """Filter changes by minimum severity level."""
        min_level = SEVERITY_ORDER.get(min_severity, 1)
        return [c for c in changes if SEVERITY_ORDER.get(c.severity, 1) >= min_level]

    def _recent_alerts(self) -> List[datetime]:
        hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        return [t for t in self.alert_history if t > hour_ago]

    def _check_rate_limit(self) -> bool:
        """Check if alert is within rate limit."""
        return len(self._recent_alerts()) < self.config.max_alerts_per_hour

    def _update_alert_history(self) -> None:
        """Record an alert and drop entries older than one hour."""
        self.alert_history = self._recent_alerts() + [datetime.now(timezone.utc)]
        if self.history_file is not None:
            atomic_write_json(self.history_file, [t.isoformat() for t in self.alert_history])

    def _load_history(self) -> List[datetime]:
        if self.history_file is None:
            return []
        try:
            raw = read_json(self.history_file)
            history = [datetime.fromisoformat(t) for t in raw]
        except FileNotFoundError:
            return []
        except (CacheCorrupt, TypeError, ValueError) as e:
            self.logger.warning("Ignoring unreadable alert history", path=str(self.history_file), error=str(e))
            return []
        return [t if t.tzinfo else t.replace(tzinfo=timezone.utc) for t in history]


def summarize_counts(changes: List[ChangeEvent]) -> Dict[str, int]:
    """Change counts per kind, keyed by value (for logging)."""
    counts: Dict[str, int] = {}
    for change in changes:
        counts[change.change_kind.value] = counts.get(change.change_kind.value, 0) + 1
    return counts
