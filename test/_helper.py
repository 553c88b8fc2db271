"""
Shared seed builders for lifecycle tests. Everything writes straight into an EntityStore.
"""
from fulfillment.models import (
    BOXES,
    EVENT_BOOKINGS,
    EVENT_RESOURCES,
    ORDERS,
    ROLES,
    USERS,
    Actor,
    Box,
    EventBooking,
    EventBookingItem,
    EventResource,
    Order,
    OrderItem,
    PaymentAuthorization,
    Role,
)
from fulfillment.store import EntityStore

ROLE_PERMISSIONS = {
    "Admin": [
        "order:updateStatus",
        "order:cancel:any",
        "event:updateStatus",
        "event:approve",
        "event:assignResource",
        "event:cancel:any",
        "admin:inventory:adjust",
    ],
    "Courier": ["order:updateStatus", "event:updateStatus"],
    "Customer": ["order:cancel:own", "event:cancel:own"],
}


async def seed_roles(store: EntityStore) -> None:
    for role_id, permissions in ROLE_PERMISSIONS.items():
        await store.insert(ROLES, role_id, Role(role_id=role_id, permissions=permissions).model_dump(mode="json"))


async def seed_actor(store: EntityStore, actor_id: str, role: str, **kwargs) -> Actor:
    actor = Actor(actor_id=actor_id, role=role, **kwargs)
    await store.insert(USERS, actor_id, actor.model_dump(mode="json"))
    return actor


async def seed_box(store: EntityStore, box_id: str = "b1", inventory: dict | None = None) -> Box:
    box = Box(box_id=box_id, name=f"Box {box_id}", inventory=inventory if inventory is not None else {"p1": 5})
    await store.insert(BOXES, box_id, box.model_dump(mode="json"))
    return box


async def seed_order(
    store: EntityStore,
    order_id: str = "o1",
    status: str = "Preparing",
    payment_status: str = "Authorized",
    total_amount: int = 5000,
    authorization_id: str | None = "auth-o1",
    **kwargs,
) -> Order:
    kwargs.setdefault("items", [OrderItem(product_id="p1", quantity=2, unit_price=2500)])
    order = Order(
        order_id=order_id,
        customer_id=kwargs.pop("customer_id", "cust1"),
        box_id=kwargs.pop("box_id", "b1"),
        status=status,
        payment_status=payment_status,
        total_amount=total_amount,
        authorization=PaymentAuthorization(
            authorization_id=authorization_id, transaction_id="txn-o1", amount=total_amount,
        ) if authorization_id else None,
        **kwargs,
    )
    await store.insert(ORDERS, order_id, order.model_dump(mode="json"))
    return order


async def seed_booking(
    store: EntityStore,
    booking_id: str = "e1",
    status: str = "PendingAdminApproval",
    payment_status: str = "Pending",
    total: int = 20000,
    **kwargs,
) -> EventBooking:
    kwargs.setdefault("selected_items", [EventBookingItem(item_id="menu1", quantity=20, unit_price=1000)])
    booking = EventBooking(
        booking_id=booking_id,
        customer_id=kwargs.pop("customer_id", "cust1"),
        booking_status=status,
        payment_status=payment_status,
        total_amount_smallest_unit=total,
        **kwargs,
    )
    await store.insert(EVENT_BOOKINGS, booking_id, booking.model_dump(mode="json"))
    return booking


async def seed_resource(store: EntityStore, resource_id: str, resource_type: str = "Team", is_active: bool = True):
    resource = EventResource(resource_id=resource_id, resource_type=resource_type, is_active=is_active)
    await store.insert(EVENT_RESOURCES, resource_id, resource.model_dump(mode="json"))
    return resource


def documents(store, collection: str) -> list[dict]:
    """All bodies in one collection of an InMemoryEntityStore."""
    return [body for (coll, _), (_, body) in store._docs.items() if coll == collection]
