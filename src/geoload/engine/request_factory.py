"""
Builds one geolocation-search request per virtual-user iteration.
"""

from __future__ import annotations

import random
from typing import Tuple

from geoload.models import RequestSpec


def random_coordinates(rng: random.Random, precision: int = 6) -> Tuple[str, str]:
    """Return a uniformly sampled ``(lat, lon)`` pair formatted to ``precision`` decimals.

    Latitude is drawn from [-90, 90] and longitude from [-180, 180]. The random
    source is passed in so callers control seeding and never share state.
    """
    lat = rng.uniform(-90.0, 90.0)
    lon = rng.uniform(-180.0, 180.0)
    return f"{lat:.{precision}f}", f"{lon:.{precision}f}"


class RequestFactory:
    """Fills the search URL template with random coordinates and static paging params."""

    def __init__(
        self,
        url: str,
        *,
        radius: int = 30,
        page: int = 1,
        limit: int = 10,
        precision: int = 6,
        method: str = "GET",
    ) -> None:
        self.url = url
        self.method = method
        self.precision = precision
        self._static_params: Tuple[Tuple[str, str], ...] = (
            ("radius", str(radius)),
            ("page", str(page)),
            ("limit", str(limit)),
        )

    def build(self, rng: random.Random) -> RequestSpec:
        lat, lon = random_coordinates(rng, self.precision)
        return RequestSpec(
            method=self.method,
            url=self.url,
            params=(("lat", lat), ("lon", lon)) + self._static_params,
        )
