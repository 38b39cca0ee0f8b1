"""
Service Container
Builds the store, ledger and call services shared by the API and workers
"""
import logging
from dataclasses import dataclass
from typing import Optional

from carecall.core.config import ConfigManager, Settings
from carecall.domain.interfaces.carrier import CarrierProvider
from carecall.domain.interfaces.durable_store import DurableStore
from carecall.domain.services.call_orchestrator import CallOrchestrator
from carecall.domain.services.call_session_service import CallSessionService
from carecall.domain.services.line_access import LineAccessService
from carecall.domain.services.minute_ledger import MinuteLedger
from carecall.domain.services.reminder_control import ReminderControlService
from carecall.domain.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Long-lived collaborators for one process."""
    settings: Settings
    config: ConfigManager
    store: DurableStore
    ledger: MinuteLedger
    sessions: CallSessionService
    line_access: LineAccessService
    reminders: ReminderControlService
    registry: SessionRegistry
    carrier: Optional[CarrierProvider] = None
    orchestrator: Optional[CallOrchestrator] = None


def build_store(settings: Settings) -> DurableStore:
    """Supabase when credentials are configured, otherwise process memory."""
    if settings.supabase_url and settings.supabase_service_key:
        from carecall.infrastructure.storage.supabase_store import SupabaseDurableStore
        return SupabaseDurableStore.from_credentials(settings.supabase_url, settings.supabase_service_key)

    if settings.environment == "production":
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in production")

    from carecall.infrastructure.storage.memory_store import InMemoryDurableStore
    logger.warning("Supabase not configured, using in-memory store")
    return InMemoryDurableStore()


def build_carrier(settings: Settings) -> Optional[CarrierProvider]:
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        logger.warning("Twilio not configured, outbound placement disabled")
        return None

    from carecall.infrastructure.telephony.twilio_caller import TwilioCaller
    return TwilioCaller(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        public_base_url=settings.public_base_url,
        api_prefix=settings.api_prefix,
    )


def build_ledger(settings: Settings, config: ConfigManager, store: DurableStore) -> MinuteLedger:
    reporter = None
    if settings.stripe_secret_key:
        from carecall.infrastructure.billing.stripe_usage_reporter import StripeUsageReporter
        reporter = StripeUsageReporter(settings.stripe_secret_key, settings.stripe_meter_event_name)
    else:
        logger.warning("Stripe not configured, metered usage stays unreported")

    ledger_config = config.section("ledger")
    return MinuteLedger(
        store,
        usage_reporter=reporter,
        min_billable_seconds=ledger_config.get("min_billable_seconds", 30),
        low_minutes_threshold=ledger_config.get("low_minutes_threshold", 15),
        critical_minutes_threshold=ledger_config.get("critical_minutes_threshold", 5),
    )


async def build_container(
    settings: Settings,
    config: Optional[ConfigManager] = None,
    store: Optional[DurableStore] = None,
    carrier: Optional[CarrierProvider] = None
) -> ServiceContainer:
    """
    Wire up the services for this process.

    `store` and `carrier` may be passed in to override the configured
    backends (local runs and tests).
    """
    config = config or ConfigManager(env=settings.environment)
    store = store or build_store(settings)
    carrier = carrier or build_carrier(settings)

    ledger = build_ledger(settings, config, store)
    sessions = CallSessionService(store, ledger)
    line_access = LineAccessService(store, ledger)

    orchestrator = None
    if carrier is not None:
        orchestrator = CallOrchestrator(sessions, carrier, line_access)

    return ServiceContainer(
        settings=settings,
        config=config,
        store=store,
        ledger=ledger,
        sessions=sessions,
        line_access=line_access,
        reminders=ReminderControlService(store),
        registry=await SessionRegistry.get_instance(),
        carrier=carrier,
        orchestrator=orchestrator,
    )
