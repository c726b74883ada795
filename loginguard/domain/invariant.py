"""Validation guards applied before any store access."""
import ipaddress
import re

from loginguard.domain.enums import IdentifierType
from loginguard.domain.errors import InvalidIdentifier

MAX_IP_LENGTH = 64
MAX_EMAIL_LENGTH = 254

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_FORBIDDEN_RE = re.compile(r"[\s\x00-\x1f\x7f]")


def validate_identifier(identifier, identifier_type) -> tuple[str, IdentifierType]:
    """Return the canonical (identifier, type) pair or raise.

    Emails are lower-cased; addresses that parse as IPv4/IPv6 are written in
    their compressed form so one client maps to one record. Other address
    strings (proxies sometimes report host names) are kept verbatim.
    """
    kind = IdentifierType.parse(identifier_type)
    if not isinstance(identifier, str):
        raise InvalidIdentifier(f"Identifier must be a string, got {type(identifier).__name__}.")
    value = identifier.strip()
    if not value:
        raise InvalidIdentifier("Identifier cannot be empty.")
    if _FORBIDDEN_RE.search(value):
        raise InvalidIdentifier("Identifier cannot contain whitespace or control characters.")

    if kind is IdentifierType.IP:
        if len(value) > MAX_IP_LENGTH:
            raise InvalidIdentifier(f"Address longer than {MAX_IP_LENGTH} characters.")
        try:
            value = str(ipaddress.ip_address(value))
        except ValueError:
            pass
        return value, kind

    if kind is IdentifierType.EMAIL:
        if len(value) > MAX_EMAIL_LENGTH:
            raise InvalidIdentifier(f"Email longer than {MAX_EMAIL_LENGTH} characters.")
        if not _EMAIL_RE.match(value):
            raise InvalidIdentifier(f"Malformed email: {value!r}")
        return value.lower(), kind

    raise InvalidIdentifier(f"Unhandled identifier type: {kind!r}")  # pragma: no cover


def mask_identifier(identifier: str, identifier_type: IdentifierType) -> str:
    """Partially hide emails for logs (e.g. 'jo**@gmail.com'); addresses pass through."""
    if identifier_type is not IdentifierType.EMAIL or "@" not in identifier:
        return identifier
    local, domain = identifier.split("@", 1)
    visible = local[:2] if len(local) >= 2 else local[:1]
    return f"{visible}{'*' * max(1, len(local) - 2)}@{domain}"
