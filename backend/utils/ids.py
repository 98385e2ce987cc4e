import secrets
import string

ALPHABET = string.ascii_uppercase + string.digits  # 36 symbols


def generate_id(length: int) -> str:
    """Random uppercase alphanumeric code, e.g. session codes and player ids."""
    return "".join(secrets.choice(ALPHABET) for _ in range(length))
