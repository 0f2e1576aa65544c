from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from sentinel_auth.logging import get_logger, redact_email
from sentinel_auth.service.email import Notifier
from sentinel_auth.storage.models import LoginHistory, utcnow

logger = get_logger(__name__)

# Decides from the most recent login at another address whether to alert
LoginAlertPolicy = Callable[[Optional[LoginHistory], datetime], bool]


def dormant_network_policy(threshold: timedelta = timedelta(days=7)) -> LoginAlertPolicy:
    """Alert when the last login from another address is older than ``threshold``.

    No such login (first login ever, or only ever this address) never alerts.
    A user alternating between two networks keeps refreshing the baseline, so
    only a return after a long gap triggers a notification.
    """

    def _policy(last_other_ip: Optional[LoginHistory], now: datetime) -> bool:
        if last_other_ip is None:
            return False
        return now - last_other_ip.login_at > threshold

    return _policy


class SessionTracker:
    """Records every successful login and sends login alerts."""

    def __init__(
        self,
        store,
        notifier: Notifier,
        *,
        policy: Optional[LoginAlertPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.policy = policy or dormant_network_policy()
        self._clock = clock

    def track_login(
        self,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        email: str,
    ) -> Optional[LoginHistory]:
        """Record the login and alert the user when the policy says so.

        Never raises: a failure here must not fail the login. Returns the
        recorded row, or None if recording failed.
        """
        try:
            last_other_ip = self.store.last_login_from_other_ip(user_id, ip_address)
            now = self._clock()
            should_notify = bool(self.policy(last_other_ip, now))
            record = self.store.record_login(
                user_id,
                ip_address,
                user_agent,
                login_at=now,
                was_notified=should_notify,
            )
        except Exception as exc:
            logger.error(
                "login_tracking_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            return None

        if record.was_notified:
            try:
                receipt = self.notifier.send_login_alert(
                    email,
                    ip_address=record.ip_address,
                    user_agent=record.user_agent,
                    login_at=record.login_at,
                )
            except Exception as exc:
                logger.error(
                    "login_alert_failed",
                    user_id=user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                if receipt:
                    logger.info(
                        "login_alert_sent", user_id=user_id, to=redact_email(email)
                    )
                else:
                    logger.warning(
                        "login_alert_not_delivered", user_id=user_id, error=receipt.error
                    )
        return record
