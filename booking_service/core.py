from shared.breaker import CircuitBreaker
from shared.rabbitmq import RabbitPublisher

from .assignment import AssignmentCoordinator
from .cancellation import CancellationPolicyEngine
from .clients import CatalogClient, PaymentGatewayClient, ProviderDirectoryClient
from .config import Settings
from .dispatcher import JobRequestDispatcher
from .expiry_worker import ExpirySweeper
from .models import utcnow
from .notifications import Notifier
from .payments import PaymentProcessor
from .ranking import ProviderRanker
from .receipts import ReceiptGenerator
from .scheduling import SchedulingValidator
from .service import BookingService
from .state_machine import BookingStateMachine


class BookingCore:
    """Wires the booking components together over one session factory."""

    def __init__(
        self,
        settings: Settings,
        session_factory,
        *,
        directory,
        catalog,
        gateway,
        publisher,
        clock=utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.publisher = publisher
        self.directory = directory
        self.catalog = catalog
        self.gateway = gateway

        self.notifier = Notifier(publisher, settings.notification_templates)
        self.state_machine = BookingStateMachine(session_factory, self.notifier, clock)
        self.ranker = ProviderRanker(directory)
        self.validator = SchedulingValidator(settings.min_lead_seconds, settings.max_advance_days, clock)
        self.payments = PaymentProcessor(
            session_factory,
            gateway,
            max_attempts=settings.payment_max_attempts,
            base_backoff_seconds=settings.payment_base_backoff_seconds,
            clock=clock,
        )
        self.cancellation = CancellationPolicyEngine(
            session_factory,
            self.state_machine,
            self.payments,
            fee_percent=settings.cancellation_fee_percent,
            free_lead_seconds=settings.free_cancellation_lead_seconds,
            clock=clock,
        )
        self.assignment = AssignmentCoordinator(session_factory, self.state_machine, self.notifier, clock)
        self.receipts = ReceiptGenerator(session_factory, clock)
        self.dispatcher = JobRequestDispatcher(
            session_factory,
            self.state_machine,
            self.ranker,
            self.cancellation,
            self.notifier,
            offer_window_seconds=settings.offer_window_seconds,
            fanout=settings.dispatch_fanout,
            initial_radius_km=settings.initial_search_radius_km,
            max_radius_km=settings.max_search_radius_km,
            radius_step_km=settings.search_radius_step_km,
            clock=clock,
        )

        self.state_machine.assignment = self.assignment
        self.state_machine.cancellation = self.cancellation
        self.state_machine.receipts = self.receipts
        self.payments.state_machine = self.state_machine

        self.service = BookingService(
            session_factory,
            self.state_machine,
            self.ranker,
            self.dispatcher,
            self.validator,
            catalog,
            self.payments,
            matching_window_seconds=settings.matching_window_seconds,
            initial_radius_km=settings.initial_search_radius_km,
            clock=clock,
        )
        self.sweeper = ExpirySweeper(
            session_factory,
            self.state_machine,
            self.dispatcher,
            self.cancellation,
            self.assignment,
            completion_timeout_seconds=settings.completion_timeout_seconds,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings, session_factory, redis_client=None, transport=None, clock=utcnow):
        timeout = settings.http_timeout_seconds
        return cls(
            settings,
            session_factory,
            directory=ProviderDirectoryClient(
                "provider_directory",
                settings.provider_directory_url,
                CircuitBreaker(redis_client, "provider-directory"),
                timeout,
                transport,
            ),
            catalog=CatalogClient(
                "catalog",
                settings.catalog_service_url,
                CircuitBreaker(redis_client, "catalog-service"),
                timeout,
                transport,
            ),
            gateway=PaymentGatewayClient(
                "payment_gateway",
                settings.payment_gateway_url,
                CircuitBreaker(redis_client, "payment-gateway"),
                timeout,
                transport,
            ),
            publisher=RabbitPublisher(settings.rabbit_url),
            clock=clock,
        )
