import json
import os
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

SERVICE_NAME = "booking-service"

DEFAULT_TEMPLATES = {
    "requested": "Your booking {booking_id} has been received.",
    "matching": "We are looking for a provider for booking {booking_id}.",
    "matched": "Providers have been offered booking {booking_id}.",
    "accepted": "A provider accepted booking {booking_id}.",
    "enroute": "Your provider is on the way.",
    "arrived": "Your provider has arrived.",
    "started": "Work has started on booking {booking_id}.",
    "in_progress": "Work is in progress on booking {booking_id}.",
    "work_completed": "The provider marked booking {booking_id} as done. Please confirm.",
    "completed": "Booking {booking_id} is complete. Thank you!",
    "cancelled": "Booking {booking_id} was cancelled ({reason}).",
    "payment_failed": "We could not take payment for booking {booking_id}.",
    "refunded": "Booking {booking_id} has been refunded.",
}


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    return int(_env(name) or default)


def _env_float(name: str, default: float) -> float:
    return float(_env(name) or default)


def _freeze_templates(overrides: dict) -> Mapping[str, Mapping[str, str]]:
    """
    Build the template table once: {"default": {...}, "<category>": {...}}.
    Category tables only carry the statuses they override.
    """
    table = {"default": MappingProxyType(dict(DEFAULT_TEMPLATES))}
    for category, templates in (overrides or {}).items():
        if category == "default":
            merged = dict(DEFAULT_TEMPLATES)
            merged.update(templates)
            table["default"] = MappingProxyType(merged)
        else:
            table[category] = MappingProxyType(dict(templates))
    return MappingProxyType(table)


@dataclass(frozen=True)
class Settings:
    database_url: str | None
    redis_url: str | None = None
    rabbit_url: str | None = None

    provider_directory_url: str = "http://provider-directory:8000"
    catalog_service_url: str = "http://catalog-service:8000"
    payment_gateway_url: str = "http://payment-gateway:8000"
    http_timeout_seconds: float = 2.0

    # matching / dispatch
    matching_window_seconds: int = 300
    offer_window_seconds: int = 120
    dispatch_fanout: int = 5
    initial_search_radius_km: float = 15.0
    max_search_radius_km: float = 40.0
    search_radius_step_km: float = 10.0

    # cancellation policy
    cancellation_fee_percent: Decimal = Decimal("20")
    free_cancellation_lead_seconds: int = 2 * 60 * 60

    # scheduling
    min_lead_seconds: int = 30 * 60
    max_advance_days: int = 30

    completion_timeout_seconds: int = 24 * 60 * 60
    sweep_interval_seconds: float = 5.0

    # payments
    payment_max_attempts: int = 5
    payment_base_backoff_seconds: int = 30
    reconcile_interval_seconds: float = 10.0

    notification_templates: Mapping[str, Mapping[str, str]] = field(
        default_factory=lambda: _freeze_templates({})
    )

    @classmethod
    def from_env(cls) -> "Settings":
        templates_raw = _env("NOTIFICATION_TEMPLATES_JSON")
        return cls(
            database_url=_env("BOOKING_DB"),
            redis_url=_env("REDIS_URL"),
            rabbit_url=_env("RABBIT_URL"),
            provider_directory_url=_env("PROVIDER_DIRECTORY_URL", "http://provider-directory:8000"),
            catalog_service_url=_env("CATALOG_SERVICE_URL", "http://catalog-service:8000"),
            payment_gateway_url=_env("PAYMENT_GATEWAY_URL", "http://payment-gateway:8000"),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 2.0),
            matching_window_seconds=_env_int("MATCHING_WINDOW_SECONDS", 300),
            offer_window_seconds=_env_int("OFFER_WINDOW_SECONDS", 120),
            dispatch_fanout=_env_int("DISPATCH_FANOUT", 5),
            initial_search_radius_km=_env_float("INITIAL_SEARCH_RADIUS_KM", 15.0),
            max_search_radius_km=_env_float("MAX_SEARCH_RADIUS_KM", 40.0),
            search_radius_step_km=_env_float("SEARCH_RADIUS_STEP_KM", 10.0),
            cancellation_fee_percent=Decimal(_env("CANCELLATION_FEE_PERCENT", "20")),
            free_cancellation_lead_seconds=_env_int("FREE_CANCELLATION_LEAD_SECONDS", 7200),
            min_lead_seconds=_env_int("MIN_LEAD_SECONDS", 1800),
            max_advance_days=_env_int("MAX_ADVANCE_DAYS", 30),
            completion_timeout_seconds=_env_int("COMPLETION_TIMEOUT_SECONDS", 86400),
            sweep_interval_seconds=_env_float("SWEEP_INTERVAL_SECONDS", 5.0),
            payment_max_attempts=_env_int("PAYMENT_MAX_ATTEMPTS", 5),
            payment_base_backoff_seconds=_env_int("PAYMENT_BASE_BACKOFF_SECONDS", 30),
            reconcile_interval_seconds=_env_float("RECONCILE_INTERVAL_SECONDS", 10.0),
            notification_templates=_freeze_templates(json.loads(templates_raw) if templates_raw else {}),
        )


settings = Settings.from_env()
