import json

import pytest

from shared.rabbitmq import RabbitPublisher

from booking_service.config import Settings, _freeze_templates
from booking_service.notifications import Notifier
from booking_service.status import BookingStatus

from conftest import FakePublisher


class BookingStub:
    id = "b-1"
    customer_id = "cust-1"
    provider_id = "prov-1"
    cancellation_reason = None

    def __init__(self, category=None):
        self.service_category = category


def test_category_template_overrides_default():
    templates = _freeze_templates({"cleaning": {"enroute": "Your cleaner is coming."}})
    notifier = Notifier(FakePublisher(), templates)

    assert notifier.render("enroute", BookingStub("cleaning")) == "Your cleaner is coming."
    assert notifier.render("arrived", BookingStub("cleaning")) == "Your provider has arrived."
    assert notifier.render("enroute", BookingStub("plumbing")) == "Your provider is on the way."


def test_default_override_and_unknown_placeholders():
    templates = _freeze_templates({"default": {"started": "Started {booking_id} at {eta}"}})
    notifier = Notifier(FakePublisher(), templates)

    assert notifier.render("started", BookingStub()) == "Started b-1 at {eta}"
    assert notifier.render("cancelled", BookingStub(), reason="rain") == "Booking b-1 was cancelled (rain)."


def test_templates_are_read_only():
    templates = Settings(database_url=None).notification_templates

    with pytest.raises(TypeError):
        templates["default"]["enroute"] = "changed"
    with pytest.raises(TypeError):
        templates["cleaning"] = {}


def test_templates_from_environment(monkeypatch):
    monkeypatch.setenv("NOTIFICATION_TEMPLATES_JSON", json.dumps({"garden": {"arrived": "Gardener here."}}))

    settings = Settings.from_env()

    assert settings.notification_templates["garden"]["arrived"] == "Gardener here."


@pytest.mark.anyio
async def test_publish_failure_is_logged_and_dropped(caplog):
    class BrokenPublisher(FakePublisher):
        async def publish(self, routing_key, message_body):
            raise RuntimeError("broker down")

    notifier = Notifier(BrokenPublisher(), _freeze_templates({}))

    notifier.status_changed(BookingStub(), BookingStatus.ARRIVED, BookingStatus.STARTED, "provider")
    await notifier.drain()

    assert "notification publish failed" in caplog.text


@pytest.mark.anyio
async def test_status_change_event_body():
    publisher = FakePublisher()
    notifier = Notifier(publisher, _freeze_templates({}))

    notifier.status_changed(BookingStub(), BookingStatus.ACCEPTED, BookingStatus.ENROUTE, "provider")
    await notifier.drain()

    [event] = publisher.events("booking.status_changed")
    assert event["event_type"] == "booking.status_changed"
    assert event["data"]["new_status"] == "enroute"


@pytest.mark.anyio
async def test_publisher_without_broker_is_disabled():
    publisher = RabbitPublisher(None)

    await publisher.connect()
    await publisher.publish("booking.status_changed", "{}")
    await publisher.close()

    assert publisher.enabled is False
