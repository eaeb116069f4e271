import secrets
import string

SESSION_CODE_ALPHABET = string.ascii_uppercase + string.digits


def sanitize_text(value: str | None) -> str | None:
    """Remove characters that cannot be encoded in UTF-8."""
    if value is None:
        return None
    return value.encode("utf-8", "ignore").decode("utf-8", "ignore")


def generate_session_code(length: int = 6) -> str:
    """Return a human shareable join code such as ``K7QX2M``."""
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(length))


def normalize_session_code(code: str | None) -> str:
    if not code:
        return ""
    return code.strip().upper()


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to specified length with ellipsis."""
    if not text:
        return ""

    if len(text) <= max_length:
        return text

    return text[:max_length-3] + "..."
