from django.core.management.base import BaseCommand, CommandError

from Caplog.audit import CapabilityAuditLog
from Caplog.exceptions import MalformedRecord, NotFound


class Command(BaseCommand):
    help = "Show one capability log record."

    def add_arguments(self, parser):
        parser.add_argument("filename", help="Record file name as shown by caplog_list.")

    def handle(self, *args, **options):
        try:
            rendered = CapabilityAuditLog().renderable_single_record(options["filename"])
        except NotFound as exc:
            raise CommandError(str(exc)) from exc
        except MalformedRecord as exc:
            raise CommandError(f"Record is malformed: {exc}") from exc

        for label, value in rendered.header_fields:
            self.stdout.write(f"{label}: {value}")
        self.stdout.write("")
        self.stdout.write("Action\tCapability\tRole")
        for action, role, capability in rendered.rows:
            self.stdout.write(f"{action}\t{capability}\t{role}")
