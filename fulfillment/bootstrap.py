"""
Wiring: one object graph per process. The role cache, gateway and dispatcher are created once here and
shared by every request.
"""
from dataclasses import dataclass

from fulfillment.calendar_sync import CalendarClient, CalendarSynchronizer, FakeCalendarClient
from fulfillment.config import Settings, settings as default_settings
from fulfillment.gateway import FakeGateway, PaymentGateway
from fulfillment.inventory import InventoryLedger
from fulfillment.notifications import Notifier, StoreNotifier
from fulfillment.payments import PaymentCoordinator
from fulfillment.permissions import PermissionResolver, RoleCache
from fulfillment.service import LifecycleService
from fulfillment.side_effects import SideEffectDispatcher, SideEffectProcessor
from fulfillment.store import EntityStore, InMemoryEntityStore
from fulfillment.transitions import StatusTransitionEngine


@dataclass
class Container:
    store: EntityStore
    gateway: PaymentGateway
    calendar_client: CalendarClient
    role_cache: RoleCache
    permissions: PermissionResolver
    payments: PaymentCoordinator
    inventory: InventoryLedger
    processor: SideEffectProcessor
    dispatcher: SideEffectDispatcher
    service: LifecycleService


def build_container(
    store: EntityStore | None = None,
    gateway: PaymentGateway | None = None,
    calendar_client: CalendarClient | None = None,
    notifier: Notifier | None = None,
    role_cache: RoleCache | None = None,
    settings: Settings | None = None,
) -> Container:
    """Assemble the lifecycle core. Side effects run in-process unless side_effect_backend is "queue"."""
    settings = settings or default_settings
    store = store or InMemoryEntityStore(settings.transaction_max_attempts)
    gateway = gateway or FakeGateway()
    calendar_client = calendar_client or FakeCalendarClient()
    role_cache = role_cache or RoleCache(settings.role_cache_ttl_seconds)

    permissions = PermissionResolver(store, role_cache)
    payments = PaymentCoordinator(gateway, settings.payment_gateway_timeout_seconds)
    inventory = InventoryLedger(store)
    processor = SideEffectProcessor(
        store,
        notifier or StoreNotifier(store),
        payments,
        CalendarSynchronizer(store, calendar_client, settings.calendar_timeout_seconds),
        settings.operator_alert_actor_id,
    )
    if settings.side_effect_backend == "queue":
        from fulfillment.queue import push_side_effect
        dispatcher = SideEffectDispatcher(push_side_effect)
    else:
        dispatcher = SideEffectDispatcher(processor.process)

    service = LifecycleService(
        store,
        permissions,
        StatusTransitionEngine(),
        payments,
        inventory,
        dispatcher,
        min_event_order=settings.event_min_order_smallest_unit,
    )
    return Container(
        store=store,
        gateway=gateway,
        calendar_client=calendar_client,
        role_cache=role_cache,
        permissions=permissions,
        payments=payments,
        inventory=inventory,
        processor=processor,
        dispatcher=dispatcher,
        service=service,
    )


async def build_postgres_container(**kwargs) -> Container:
    """Container backed by the Postgres document store (schema created if missing)."""
    from fulfillment.db import PostgresEntityStore, get_pool, init_schema

    pool = await get_pool()
    await init_schema(pool)
    return build_container(store=PostgresEntityStore(pool), **kwargs)
