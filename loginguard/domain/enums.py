"""Enums and value objects used across the domain."""
from enum import Enum

from loginguard.domain.errors import InvalidType


class IdentifierType(str, Enum):
    IP = "ip"
    EMAIL = "email"

    @staticmethod
    def parse(value) -> "IdentifierType":
        """Coerce a raw value (enum member or string) into an IdentifierType.

        Raises InvalidType for anything that is not one of the known kinds.
        """
        if isinstance(value, IdentifierType):
            return value
        if isinstance(value, str):
            try:
                return IdentifierType(value.strip().lower())
            except ValueError:
                pass
        raise InvalidType(f"Unknown identifier type: {value!r}")


class BlockTier(str, Enum):
    NONE = "none"
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"

    @staticmethod
    def escalation_order() -> list:
        return [
            BlockTier.NONE,
            BlockTier.FIRST,
            BlockTier.SECOND,
            BlockTier.THIRD,
        ]

    def rank(self) -> int:
        return BlockTier.escalation_order().index(self)


class FailMode(str, Enum):
    """What a host does with a login when the ledger cannot be consulted."""

    OPEN = "open"
    CLOSED = "closed"
