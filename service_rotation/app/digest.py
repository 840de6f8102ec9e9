"""
Rotation digest formatting.

One digest covers every qualifying record of a scan, grouped by
application and environment in the order records were read.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from shared.notifications import SEVERITY_ORDER, NotificationPayload, Severity

from .policy import RotationStatus

DIGEST_KIND = "rotation_digest"
DIGEST_ACTION = "ROTATION_REMINDER"
SYSTEM_ACTOR = "system"
MIXED = "multiple"

HIGH_OVERDUE_DAYS = 30
MEDIUM_OVERDUE_DAYS = 7

GroupKey = Tuple[str, str]


def group_by_app_env(statuses: Iterable[RotationStatus]) -> Dict[GroupKey, List[RotationStatus]]:
    groups: Dict[GroupKey, List[RotationStatus]] = {}
    for status in statuses:
        key = (status.record.app, status.record.env.value)
        groups.setdefault(key, []).append(status)
    return groups


def severity_for(status: RotationStatus) -> Severity:
    if status.is_overdue and status.overdue_days > HIGH_OVERDUE_DAYS:
        return Severity.HIGH
    if status.is_overdue and status.overdue_days > MEDIUM_OVERDUE_DAYS:
        return Severity.MEDIUM
    return Severity.LOW


def digest_severity(statuses: Iterable[RotationStatus]) -> Severity:
    """Highest severity among the records."""
    return max((severity_for(s) for s in statuses), key=SEVERITY_ORDER.__getitem__, default=Severity.LOW)


def digest_subject(count: int) -> str:
    return f"Secret Rotation Alert - {count} secret(s) require rotation"


def format_digest(groups: Dict[GroupKey, List[RotationStatus]]) -> str:
    lines = [
        "Secret Rotation Reminder",
        "",
        "The following secrets require attention for rotation:",
        "",
    ]
    for (app, env), statuses in groups.items():
        lines.append("")
        lines.append(f"=== {app} - {env} ===")
        for status in statuses:
            lines.append("")
            lines.append(f"- Secret: {status.record.name}")
            lines.append(f"  Days Since Rotation: {status.days_since_rotation}")
            lines.append(f"  Rotation Period: {status.record.rotation_period_days} days")
            if status.is_overdue:
                lines.append(f"  Status: OVERDUE by {abs(status.days_until_due)} days")
            else:
                lines.append(f"  Status: Due in {status.days_until_due} days")
    lines.append("")
    lines.append("")
    lines.append("Please rotate these secrets to maintain security compliance.")
    return "\n".join(lines) + "\n"


def build_digest(groups: Dict[GroupKey, List[RotationStatus]], now: datetime,
                 portal_url: Optional[str] = None) -> NotificationPayload:
    """The single notification sent for a scan."""
    statuses = [status for group in groups.values() for status in group]
    if not statuses:
        raise ValueError("A digest needs at least one record")

    apps = {app for app, _ in groups}
    envs = {env for _, env in groups}
    only = statuses[0].record if len(statuses) == 1 else None

    return NotificationPayload(
        kind=DIGEST_KIND,
        title=digest_subject(len(statuses)),
        message=format_digest(groups),
        app=apps.pop() if len(apps) == 1 else MIXED,
        env=envs.pop() if len(envs) == 1 else MIXED,
        action=DIGEST_ACTION,
        actor_id=SYSTEM_ACTOR,
        timestamp=now,
        severity=digest_severity(statuses),
        secret_name=only.name if only else None,
        portal_url=portal_url,
    )
