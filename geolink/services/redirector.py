import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..exceptions import LinkNotFound
from ..observability import REDIRECT_TOTAL, REDIRECT_404_TOTAL, REDIRECT_ERRORS_TOTAL
from .geolocation import GeoLocation, GeolocationResolver
from .link_cache import LinkCache
from .rule_matcher import select_redirect
from .visit_recorder import VisitEvent, VisitRecorder

logger = logging.getLogger(__name__)


class RedirectOutcome(str, Enum):
    REDIRECT = "redirect"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class RedirectResult:
    outcome: RedirectOutcome
    url: Optional[str] = None
    rule_id: Optional[int] = None
    location: Optional[GeoLocation] = None
    error: Optional[BaseException] = None


class Redirector:
    """Short code + client IP -> redirect decision.

    Link lookup, geolocation and rule matching happen inline; the visit is
    handed to the recorder after the decision is made and is never awaited.
    """

    def __init__(self, links: LinkCache, geolocation: GeolocationResolver, visits: VisitRecorder):
        self.links = links
        self.geolocation = geolocation
        self.visits = visits

    async def handle_redirect(self, short_code: str, client_ip: str) -> RedirectResult:
        try:
            link = await self.links.get_active_link_by_code(short_code)
            if link is None or not link.active:
                raise LinkNotFound(short_code)

            location = await self.geolocation.resolve_location(client_ip)
            url, rule_id = select_redirect(link.rules, location.country_code, link.base_url)
        except LinkNotFound as e:
            REDIRECT_404_TOTAL.inc()
            return RedirectResult(RedirectOutcome.NOT_FOUND, error=e)
        except Exception as e:
            REDIRECT_ERRORS_TOTAL.inc()
            logger.exception(
                f"Redirect failed for short code {short_code!r}",
                extra={"short_code": short_code, "client_ip": client_ip},
            )
            return RedirectResult(RedirectOutcome.ERROR, error=e)

        REDIRECT_TOTAL.labels(matched=str(rule_id is not None).lower()).inc()
        self.visits.submit(VisitEvent(link.id, client_ip, location, rule_id))
        return RedirectResult(RedirectOutcome.REDIRECT, url=url, rule_id=rule_id, location=location)
