import re
from rest_framework import serializers

# MTN Rwanda MSISDN prefixes (country code + operator code)
MTN_RW_PREFIXES = ("25078", "25079")


def validate_phone(value):
    pattern = r"^\+?\d{10,15}$"
    if not re.match(pattern, str(value)):
        raise serializers.ValidationError("Invalid phone number format.")
    return value


def normalize_rw_phone(value) -> str:
    """
    Returns the 12 digit international form (2507XXXXXXXX) of a Rwandan number.
    Accepts local (07XXXXXXXX), international (+250 7XX XXX XXX) and bare forms.
    """
    digits = re.sub(r"\D", "", str(value or ""))
    if digits.startswith("0"):
        digits = "250" + digits[1:]
    elif not digits.startswith("250"):
        digits = "250" + digits

    if len(digits) != 12:
        raise ValueError("Phone number must be 12 digits (e.g., 250788123456)")
    return digits


def normalize_mtn_phone(value) -> str:
    digits = normalize_rw_phone(value)
    if not digits.startswith(MTN_RW_PREFIXES):
        raise ValueError("Please enter a correct MTN number starting with 25078 or 25079")
    return digits
