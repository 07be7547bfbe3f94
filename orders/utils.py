import secrets
import string

from django.utils import timezone

ALNUM = string.ascii_uppercase + string.digits


def _rand(k: int) -> str:
    return "".join(secrets.choice(ALNUM) for _ in range(k))


def generate_order_code() -> str:
    # e.g. ORD-202610-7K2M9Q
    return f"ORD-{timezone.now().strftime('%Y%m')}-{_rand(6)}"


def generate_payment_code() -> str:
    return f"PAY{timezone.now().strftime('%y%m%d%H%M%S')}{_rand(5)}"


def generate_txn_ref() -> str:
    # gateway allows alnum only, keep it short
    ts = timezone.now().strftime("%m%d%H%M%S")
    return f"{ts}{_rand(8)}"
