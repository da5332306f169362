from typing import Optional, Sequence

from ..schemas import RuleSnapshot
from .geolocation import UNKNOWN_LOCATION

def normalize_url(url: str) -> str:
    """Prefix schemeless URLs with https:// so redirects are never relative."""
    url = url.strip()
    lowered = url.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        return url
    return f"https://{url.lstrip('/')}"

def select_redirect(rules: Sequence[RuleSnapshot], country: str, fallback: str) -> tuple[str, Optional[int]]:
    """Return the URL of the first rule targeting ``country``, else ``fallback``.

    Rules are scanned in the order given; the first hit wins even when a
    later rule also lists the country.
    """
    if country != UNKNOWN_LOCATION.country_code:
        for rule in rules:
            if country in rule.countries:
                return normalize_url(rule.redirect_url), rule.id
    return normalize_url(fallback), None
