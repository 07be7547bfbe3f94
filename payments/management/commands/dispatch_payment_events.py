from django.core.management.base import BaseCommand

from payments.events import dispatch_pending


class Command(BaseCommand):
    help = "Deliver queued payment notifications that were not sent after commit"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=100)

    def handle(self, *args, **opts):
        stats = dispatch_pending(limit=opts["max"])
        if not stats["attempted"]:
            self.stdout.write(self.style.SUCCESS("No pending payment events."))
            return
        msg = f"Sent {stats['sent']} of {stats['attempted']} payment events"
        if stats["failed"]:
            self.stdout.write(self.style.WARNING(f"{msg}, {stats['failed']} failed"))
        else:
            self.stdout.write(self.style.SUCCESS(msg))
