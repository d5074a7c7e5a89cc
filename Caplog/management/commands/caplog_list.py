from django.core.management.base import BaseCommand

from Caplog.audit import CapabilityAuditLog


def _flag(value: bool) -> str:
    return "Yes" if value else "-"


class Command(BaseCommand):
    help = "List capability log records, newest first."

    def handle(self, *args, **options):
        audit_log = CapabilityAuditLog()
        summaries = audit_log.list_summaries()
        if not summaries:
            self.stdout.write("No log entries exist at this time.")
            return
        self.stdout.write("Date/time\tUser\tRoles Affected\tAdded?\tRemoved?\tFile")
        for summary in summaries:
            self.stdout.write(
                "\t".join(
                    [
                        summary.timestamp,
                        summary.actor_display_name,
                        summary.roles_affected,
                        _flag(summary.added),
                        _flag(summary.removed),
                        summary.filename,
                    ]
                )
            )
        self.stdout.write(
            self.style.SUCCESS(f"Log entries are removed after {audit_log.config.max_age_days} days.")
        )
