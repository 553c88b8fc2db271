import pytest

from _helper import documents, seed_actor, seed_booking, seed_resource
from fulfillment.bootstrap import build_container
from fulfillment.config import Settings
from fulfillment.models import EVENT_BOOKINGS, NOTIFICATIONS
from fulfillment.service import Caller


async def get_booking(store, booking_id="e1"):
    return await store.get(EVENT_BOOKINGS, booking_id)


async def test_delay_requires_reason(service, seeded, courier):
    await seed_booking(seeded, "e1", status="Confirmed")
    result = await service.update_event_status(
        courier, {"booking_id": "e1", "new_status": "Delayed", "details": {"reason": None}}
    )
    assert not result.success
    assert result.error_code == "INVALID_ARGUMENT"
    assert (await get_booking(seeded))["booking_status"] == "Confirmed"


async def test_delay_with_reason_alerts_operators(service, container, seeded, courier):
    await seed_booking(seeded, "e1", status="Scheduled")
    result = await service.update_event_status(
        courier, {"booking_id": "e1", "new_status": "Delayed", "details": {"reason": "van broke down"}}
    )
    assert result.success
    doc = await get_booking(seeded)
    assert doc["booking_status"] == "Delayed"
    assert doc["last_delay_reason"] == "van broke down"

    await container.dispatcher.drain()
    alerts = [n for n in documents(seeded, NOTIFICATIONS) if n["template_key"] == "notification.operatorAlert"]
    assert alerts and alerts[0]["recipient_id"] == "operations"


async def test_update_event_status_rejects_other_targets(service, seeded, courier):
    await seed_booking(seeded, "e1", status="PendingCustomerConfirmation")
    result = await service.update_event_status(courier, {"booking_id": "e1", "new_status": "Confirmed"})
    assert result.error_code == "INVALID_STATUS"


async def test_event_progression_to_completion(service, seeded, courier):
    await seed_booking(seeded, "e1", status="Scheduled")
    for status in ("Preparing", "InProgress", "Completed"):
        result = await service.update_event_status(courier, {"booking_id": "e1", "new_status": status})
        assert result.success, (status, result)
    doc = await get_booking(seeded)
    assert doc["booking_status"] == "Completed"
    assert doc["actual_end_time"] is not None
    assert doc["actual_start_time"] is not None
    assert [h["to_status"] for h in doc["status_change_history"]] == ["Preparing", "InProgress", "Completed"]


async def test_approve_moves_to_customer_confirmation(service, seeded, admin):
    await seed_booking(seeded, "e1")
    result = await service.approve_event_booking(admin, {"booking_id": "e1", "decision": "Approved", "notes": "ok"})
    assert result.success
    doc = await get_booking(seeded)
    assert doc["booking_status"] == "PendingCustomerConfirmation"
    assert doc["admin_approval_details"]["decision"] == "Approved"
    assert doc["admin_approval_details"]["actor_id"] == "admin1"
    assert doc["agreement_sent_at"] is not None


async def test_reject(service, seeded, admin):
    await seed_booking(seeded, "e1")
    result = await service.approve_event_booking(admin, {"booking_id": "e1", "decision": "Rejected"})
    assert result.success
    assert (await get_booking(seeded))["booking_status"] == "Rejected"


async def test_approve_with_changes_recalculates_total(service, seeded, admin):
    await seed_booking(seeded, "e1", total=20000)
    result = await service.approve_event_booking(admin, {
        "booking_id": "e1",
        "decision": "ApprovedWithChanges",
        "updated_items": [
            {"item_id": "menu1", "quantity": 10, "unit_price": 1000},
            {"item_id": "dj", "item_type": "service", "duration_hours": 2.5, "unit_price": 4000},
        ],
    })
    assert result.success, result
    doc = await get_booking(seeded)
    assert doc["total_amount_smallest_unit"] == 20000
    assert len(doc["selected_items"]) == 2
    assert all(item["line_id"] for item in doc["selected_items"])


async def test_approve_with_changes_requires_items(service, seeded, admin):
    await seed_booking(seeded, "e1")
    result = await service.approve_event_booking(admin, {"booking_id": "e1", "decision": "ApprovedWithChanges"})
    assert result.error_code == "INVALID_ARGUMENT"


async def test_approve_with_changes_below_minimum(seeded, admin, gateway, calendar_client):
    settings = Settings(event_min_order_smallest_unit=50000)
    container = build_container(store=seeded, gateway=gateway, calendar_client=calendar_client, settings=settings)
    await seed_booking(seeded, "e1")
    result = await container.service.approve_event_booking(admin, {
        "booking_id": "e1",
        "decision": "ApprovedWithChanges",
        "updated_items": [{"item_id": "menu1", "quantity": 1, "unit_price": 1000}],
    })
    await container.dispatcher.drain()
    assert result.error_code == "MIN_ORDER_NOT_MET"
    assert (await get_booking(seeded))["booking_status"] == "PendingAdminApproval"


async def test_confirm_agreement_charges_and_creates_calendar_event(
    service, container, seeded, customer, gateway, calendar_client,
):
    await seed_booking(seeded, "e1", status="PendingCustomerConfirmation", total=20000)
    result = await service.confirm_event_agreement(customer, {"booking_id": "e1"})
    assert result.success
    assert not result.requires_action
    doc = await get_booking(seeded)
    assert doc["booking_status"] == "Confirmed"
    assert doc["payment_status"] == "Paid"
    assert doc["agreement_confirmed_at"] is not None
    assert gateway.calls[0]["method"] == "charge"
    assert gateway.calls[0]["amount"] == 20000

    await container.dispatcher.drain()
    doc = await get_booking(seeded)
    assert doc["calendar_event_id"] in calendar_client.events


async def test_confirm_agreement_requires_action(service, seeded, customer, gateway):
    gateway.configure("charge", "requires_action")
    await seed_booking(seeded, "e1", status="PendingCustomerConfirmation")
    result = await service.confirm_event_agreement(customer, {"booking_id": "e1"})
    assert result.success
    assert result.requires_action
    assert result.action_url == gateway.action_url
    doc = await get_booking(seeded)
    assert doc["booking_status"] == "Confirmed"
    assert doc["payment_status"] == "ActionRequired"


async def test_confirm_agreement_charge_failure(service, seeded, customer, gateway):
    gateway.configure("charge", "fail")
    await seed_booking(seeded, "e1", status="PendingCustomerConfirmation")
    result = await service.confirm_event_agreement(customer, {"booking_id": "e1"})
    assert result.error_code == "PAYMENT_CHARGE_FAILED"
    assert (await get_booking(seeded))["booking_status"] == "PendingCustomerConfirmation"


async def test_only_owner_confirms(service, seeded):
    await seed_booking(seeded, "e1", status="PendingCustomerConfirmation", customer_id="cust1")
    result = await service.confirm_event_agreement(Caller("cust2", "Customer"), {"booking_id": "e1"})
    assert result.error_code == "NOT_BOOKING_OWNER"


async def test_confirm_requires_pending_confirmation(service, seeded, customer):
    await seed_booking(seeded, "e1", status="PendingAdminApproval")
    result = await service.confirm_event_agreement(customer, {"booking_id": "e1"})
    assert result.error_code == "INVALID_STATUS_TRANSITION"


async def test_assign_resources(service, seeded, admin):
    await seed_booking(seeded, "e1", status="Confirmed")
    await seed_resource(seeded, "team-a")
    await seed_resource(seeded, "van-1", "Vehicle")
    result = await service.assign_event_resources(admin, {
        "booking_id": "e1",
        "assignments": {"Team": ["team-a"], "Vehicle": ["van-1"]},
        "lead_actor_id": "courier1",
    })
    assert result.success, result
    doc = await get_booking(seeded)
    assert doc["booking_status"] == "Scheduled"
    assert doc["assigned_resources"] == {"Team": ["team-a"], "Vehicle": ["van-1"]}
    assert doc["assigned_lead_actor_id"] == "courier1"


async def test_reassign_while_scheduled(service, seeded, admin):
    await seed_booking(seeded, "e1", status="Scheduled")
    await seed_resource(seeded, "team-b")
    result = await service.assign_event_resources(admin, {"booking_id": "e1", "assignments": {"Team": ["team-b"]}})
    assert result.success
    doc = await get_booking(seeded)
    assert doc["assigned_resources"] == {"Team": ["team-b"]}
    assert doc["status_change_history"] == []


@pytest.mark.parametrize("assignments, lead, code", [
    ({"Team": ["missing"]}, None, "RESOURCE_NOT_FOUND"),
    ({"Team": ["retired"]}, None, "RESOURCE_INACTIVE"),
    ({}, "cust1", "LEAD_ACTOR_INVALID"),
    ({}, "nobody", "LEAD_ACTOR_INVALID"),
])
async def test_assign_resources_validation(service, seeded, admin, assignments, lead, code):
    await seed_booking(seeded, "e1", status="Confirmed")
    await seed_resource(seeded, "retired", is_active=False)
    result = await service.assign_event_resources(
        admin, {"booking_id": "e1", "assignments": assignments, "lead_actor_id": lead}
    )
    assert result.error_code == code
    assert (await get_booking(seeded))["booking_status"] == "Confirmed"


async def test_assign_requires_confirmed_booking(service, seeded, admin):
    await seed_booking(seeded, "e1", status="PendingAdminApproval")
    result = await service.assign_event_resources(admin, {"booking_id": "e1", "assignments": {}})
    assert result.error_code == "INVALID_STATUS_TRANSITION"


async def test_cancel_booking_refunds_and_removes_calendar_event(
    service, container, seeded, customer, gateway, calendar_client,
):
    calendar_client.events["cal-1"] = {}
    await seed_booking(seeded, "e1", status="Confirmed", payment_status="Paid",
                       payment_details={"charge_id": "txn-e1"}, calendar_event_id="cal-1")
    result = await service.cancel_event_booking(customer, {"booking_id": "e1", "reason": "weather"})
    assert result.success
    assert result.data["payment_status"] == "RefundPending"

    await container.dispatcher.drain()
    doc = await get_booking(seeded)
    assert doc["booking_status"] == "Cancelled"
    assert doc["payment_status"] == "Refunded"
    assert doc["calendar_event_id"] is None
    assert "cal-1" not in calendar_client.events
    assert gateway.calls[-1]["reason"] == "weather"


async def test_cancel_booking_calendar_failure_flags_manual_check(
    service, container, seeded, admin, calendar_client,
):
    calendar_client.fail_delete = True
    await seed_booking(seeded, "e1", status="Scheduled", calendar_event_id="cal-2")
    result = await service.cancel_event_booking(admin, {"booking_id": "e1"})
    assert result.success
    await container.dispatcher.drain()
    doc = await get_booking(seeded)
    assert doc["needs_manual_calendar_check"] is True
    assert doc["calendar_event_id"] == "cal-2"


async def test_cancel_in_progress_booking_rejected(service, seeded, admin):
    await seed_booking(seeded, "e1", status="InProgress")
    result = await service.cancel_event_booking(admin, {"booking_id": "e1"})
    assert result.error_code == "INVALID_STATUS_TRANSITION"


async def test_other_customer_cannot_cancel(service, seeded):
    await seed_actor(seeded, "cust3", "Customer")
    await seed_booking(seeded, "e1", status="Confirmed", customer_id="cust1")
    result = await service.cancel_event_booking(Caller("cust3", "Customer"), {"booking_id": "e1"})
    assert result.error_code == "PERMISSION_DENIED"
