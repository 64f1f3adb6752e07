import random

from django.utils import timezone


def generate_order_number(prefix="EG"):
    """
    Human readable order number: prefix + YYMMDD + 3 random digits.
    Uniqueness is enforced by the DB constraint; callers retry on collision.
    """
    today = timezone.localdate()
    return f"{prefix}{today:%y%m%d}{random.randint(0, 999):03d}"


def generate_reference_number(prefix="PAY"):
    millis = str(int(timezone.now().timestamp() * 1000))
    return f"{prefix}{millis[-8:]}{random.randint(0, 999):03d}"
