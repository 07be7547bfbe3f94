import logging
import time

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from payments.services import expire_stale_payments

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Expire PENDING payments past their deadline, cancel their orders and release stock"

    def add_arguments(self, parser):
        parser.add_argument("--loop", action="store_true", help="Keep sweeping every --interval seconds")
        parser.add_argument("--interval", type=int, default=None)
        parser.add_argument("--batch-size", type=int, default=100)
        parser.add_argument("--passes", type=int, default=0, help="Stop a --loop after this many passes (0 = never)")

    def handle(self, *args, **opts):
        interval = opts["interval"] or getattr(settings, "PAYMENT_SWEEP_INTERVAL_SECONDS", 300)
        passes = 0
        while True:
            passes += 1
            try:
                result = expire_stale_payments(batch_size=opts["batch_size"])
            except Exception as e:
                if not opts["loop"]:
                    raise CommandError(f"Payment sweep failed: {e}") from e
                # the failed SweepRun row is what the health endpoint reports
                logger.exception("Payment sweep pass %s failed, retrying in %ss", passes, interval)
                self.stderr.write(self.style.ERROR(f"Payment sweep failed: {e}"))
            else:
                if result.expired or result.cancelled_orders:
                    self.stdout.write(self.style.SUCCESS(
                        f"Expired {result.expired} payments, cancelled {result.cancelled_orders} orders"
                        f" ({result.skipped} already settled)"
                    ))
                else:
                    self.stdout.write(self.style.SUCCESS("No stale payments."))

            if not opts["loop"] or (opts["passes"] and passes >= opts["passes"]):
                return
            time.sleep(interval)
