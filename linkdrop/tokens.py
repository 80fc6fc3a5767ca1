import secrets
import string

ALPHABET = string.ascii_letters + string.digits


def generate(length: int) -> str:
    """Return a random URL-safe token of exactly ``length`` characters."""
    if isinstance(length, bool) or not isinstance(length, int) or length < 1:
        raise ValueError(f"token length must be a positive integer, got {length!r}")
    return "".join(secrets.choice(ALPHABET) for _ in range(length))
