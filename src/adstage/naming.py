"""Computer name generation."""
from __future__ import annotations

from .errors import InvalidRequest, NameTooLong

DEFAULT_PREFIX = "OSN"
# NetBIOS computer names are limited to 15 characters.
DEFAULT_MAX_LENGTH = 15


def generate_name(
    site_id: str,
    asset_tag: str,
    *,
    prefix: str = DEFAULT_PREFIX,
    max_length: int = DEFAULT_MAX_LENGTH,
) -> str:
    """Return ``prefix + site_id`` followed by as much of *asset_tag*'s tail as fits.

    The site id is never truncated: when ``prefix + site_id`` already fills
    *max_length* the call raises :class:`NameTooLong`.
    """
    site = site_id.strip()
    tag = asset_tag.strip()
    if not site:
        raise InvalidRequest("Site id must not be blank.")

    budget = max_length - (len(prefix) + len(site))
    if budget <= 0:
        raise NameTooLong(prefix, site, max_length)

    return f"{prefix}{site}{tag[-budget:]}"


def account_key(name: str) -> str:
    """Return the account-name lookup key (``NAME$``) for a computer *name*."""
    return name if name.endswith("$") else f"{name}$"


__all__ = ["DEFAULT_MAX_LENGTH", "DEFAULT_PREFIX", "account_key", "generate_name"]
