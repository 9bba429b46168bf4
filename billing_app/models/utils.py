import secrets
from datetime import date


def generate_agreement_reference(created_on: date) -> str:
    suffix = secrets.token_hex(3).upper()
    return f"RENT-{created_on:%Y}-{created_on:%m%d}-{suffix}"
