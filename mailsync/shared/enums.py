"""Shared enum helpers for the sync engine.

Domain enums (provider type, sync state, error category) live in
mailsync.domain.enums and build on the mixin defined here.
"""


class _ValuesMixin:
    """Mixin that adds values() and parse() classmethods to str Enums."""

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid values as strings."""
        return [member.value for member in cls]  # type: ignore[attr-defined]

    @classmethod
    def parse(cls, raw: str):
        """Return the member for raw (case-insensitive, surrounding whitespace ignored).

        Raises:
            ValueError: If raw is not a valid value.
        """
        normalized = raw.strip().lower()
        for member in cls:  # type: ignore[attr-defined]
            if member.value == normalized:
                return member
        raise ValueError(f"{raw!r} is not one of {cls.values()}")
