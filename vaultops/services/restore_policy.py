from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from vaultops.core.errors import ValidationError
from vaultops.domain.models import Job


@dataclass(frozen=True)
class RestoreOverrides:
    force_trust_old_backup: bool = False
    skip_validation_check: bool = False


class RestoreSafetyPolicy:
    """Gate for production restores.

    Checks run in a fixed order (freshness, then verification) and fail fast,
    so the first violated check determines the error message.
    """

    def __init__(self, max_backup_age_days: int = 7) -> None:
        self.max_backup_age = timedelta(days=max_backup_age_days)

    def backup_age(self, backup: Job, now: datetime) -> timedelta:
        # Fall back to creation time for backups that predate completed_at tracking.
        reference = backup.completed_at or backup.created_at
        return now - reference

    def validate(
        self,
        backup: Job,
        overrides: RestoreOverrides,
        *,
        verified_by_dr_test: bool,
        now: datetime | None = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        age = self.backup_age(backup, now)
        if age > self.max_backup_age and not overrides.force_trust_old_backup:
            age_days = round(age.total_seconds() / 86400)
            max_days = self.max_backup_age.days
            raise ValidationError(
                f"Selected backup is {age_days} days old; production restores require a backup "
                f"newer than {max_days} days. Set force_trust_old_backup to proceed."
            )
        if not verified_by_dr_test and not overrides.skip_validation_check:
            raise ValidationError(
                "Backup has not been validated by a successful DR test. "
                "Set skip_validation_check to proceed."
            )
