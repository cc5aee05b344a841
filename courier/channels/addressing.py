"""Destination address normalisation for phone-number based channels."""

import re

_NON_DIGITS = re.compile(r"\D")

# Suffix the WhatsApp bridge expects on personal chat ids
USER_SUFFIX = "@c.us"


def normalize_destination(raw: str | None) -> str | None:
    """
    Turn user input into a channel address.

    Addresses that already contain ``@`` are opaque and returned unchanged.
    Anything else is treated as a phone number: non-digits are stripped and
    the user suffix appended. Returns None when nothing usable remains.

        >>> normalize_destination("+39 333-123 4567")
        '393331234567@c.us'
    """
    if not raw:
        return None
    if "@" in raw:
        return raw
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        return None
    return f"{digits}{USER_SUFFIX}"
