from django.core.management.base import BaseCommand

from Caplog.audit import CapabilityAuditLog


class Command(BaseCommand):
    help = "Delete capability log records older than the retention age."

    def add_arguments(self, parser):
        parser.add_argument("--days", type=int, default=None, help="Override CAPLOG_MAX_AGE_DAYS.")

    def handle(self, *args, **options):
        audit_log = CapabilityAuditLog()
        days = options["days"]
        if days is None:
            days = audit_log.config.max_age_days
        deleted = audit_log.prune(max(0, int(days)))
        self.stdout.write(
            self.style.SUCCESS(f"Deleted {len(deleted)} capability log record(s) older than {days} day(s).")
        )
