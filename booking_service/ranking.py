import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .scheduling import BlackoutWindow, SchedulingValidator, parse_blackouts, parse_dt

# "never accepted" sorts before any real timestamp
NEVER = datetime.min.replace(tzinfo=timezone.utc)


def norm(s: str) -> str:
    return (s or "").strip().lower()


def haversine(lat1, lon1, lat2, lon2):
    R = 6371
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lon / 2) ** 2
    )

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class ProviderCandidate:
    id: str
    distance_km: float
    rating: float
    last_accept_time: datetime | None
    available: bool
    service_ids: frozenset = frozenset()
    blackouts: tuple[BlackoutWindow, ...] = field(default=(), compare=False)

    def serves(self, service_id: str) -> bool:
        return norm(service_id) in self.service_ids

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "distance_km": round(self.distance_km, 2),
            "rating": self.rating,
            "last_accept_time": self.last_accept_time.isoformat() if self.last_accept_time else None,
            "available": self.available,
        }


def candidate_from_record(record: dict, origin: Location) -> ProviderCandidate | None:
    """Project a provider-directory record onto a booking location; None if it has no position."""
    lat = record.get("latitude")
    lon = record.get("longitude")
    if lat is None or lon is None:
        return None
    last_accept = record.get("last_accept_time")
    return ProviderCandidate(
        id=str(record["id"]),
        distance_km=haversine(origin.latitude, origin.longitude, float(lat), float(lon)),
        rating=float(record.get("rating") or 0.0),
        last_accept_time=parse_dt(last_accept) if last_accept else None,
        available=bool(record.get("available", False)),
        service_ids=frozenset(norm(s) for s in record.get("service_ids") or []),
        blackouts=parse_blackouts(record.get("blackouts")),
    )


def ranking_key(candidate: ProviderCandidate):
    """
    distance ascending, rating descending, least recently accepted first,
    then id so the order is total.
    """
    last_accept = candidate.last_accept_time or NEVER
    if last_accept.tzinfo is None:
        last_accept = last_accept.replace(tzinfo=timezone.utc)
    return (candidate.distance_km, -candidate.rating, last_accept, candidate.id)


def rank_candidates(
    candidates,
    service_id: str,
    max_distance_km: float,
    at: datetime | None = None,
) -> list[ProviderCandidate]:
    eligible = [
        c for c in candidates
        if c.serves(service_id)
        and c.available
        and c.distance_km <= max_distance_km
        and (at is None or SchedulingValidator.is_provider_free(c.blackouts, at))
    ]
    return sorted(eligible, key=ranking_key)


class ProviderRanker:
    """Deterministic candidate ordering over the provider directory. Read-only."""

    def __init__(self, directory):
        self.directory = directory

    async def candidates(self, service_id: str, location: Location) -> list[ProviderCandidate]:
        records = await self.directory.list_providers(service_id)
        out = []
        for record in records:
            candidate = candidate_from_record(record, location)
            if candidate is not None:
                out.append(candidate)
        return out

    async def rank(
        self,
        service_id: str,
        location: Location,
        max_distance_km: float,
        at: datetime | None = None,
    ) -> list[ProviderCandidate]:
        """Empty list when nobody qualifies; callers read that as "no providers available"."""
        return rank_candidates(await self.candidates(service_id, location), service_id, max_distance_km, at)
