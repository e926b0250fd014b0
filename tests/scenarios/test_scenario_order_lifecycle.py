"""
תרחישי מחזור חיים של הזמנה מקצה לקצה: API ניהול → ערוץ הנהגים → לחיצות → outbox
"""
import pytest

from app.db.models.executor import ExecutorRole
from app.db.models.order import OrderStatus

from tests.conftest import DRIVERS_CHAT_ID
from tests.scenarios.conftest import (
    assert_order_status,
    assert_outbox_count,
    create_order_via_api,
    press_in_channel,
    send_tg,
    send_tg_callback,
)


@pytest.mark.scenario
class TestScenarioOrderLifecycle:
    async def test_claim_release_and_undo(
        self, test_client, db_session, fake_transport, drivers_channel, executor_factory, undo_clock
    ):
        await executor_factory(101, username="fast")
        created = await create_order_via_api(test_client)
        order_id = created["order"]["id"]
        first_announcement = created["publish"]["message_id"]

        # לקיחה מהערוץ: ההודעה נמחקת והנהג מקבל כפתורי ביצוע בפרטי
        result = await press_in_channel(test_client, 101, f"order:accept:{order_id}")
        assert result["outcome"] == "claimed"
        await assert_order_status(db_session, order_id, OrderStatus.CLAIMED, claimed_by=101)
        assert (DRIVERS_CHAT_ID, first_announcement) in fake_transport.deleted
        private = fake_transport.sent_to(101)[-1]
        assert f"jobs:complete:{order_id}" in fake_transport.callback_data(private)

        # שחרור: פרסום מחדש, הודעה למזמין וכפתור ביטול
        result = await send_tg_callback(test_client, 101, f"jobs:release:{order_id}")
        assert result["outcome"] == "released"
        await assert_order_status(db_session, order_id, OrderStatus.OPEN)
        channel_posts = fake_transport.sent_to(DRIVERS_CHAT_ID)
        assert len(channel_posts) == 2
        await assert_outbox_count(db_session, 1, message_type="order_released", recipient_id="555")
        undo_message = fake_transport.sent_to(101)[-1]
        assert fake_transport.callback_data(undo_message) == [f"jobs:undo_release:{order_id}"]

        # ביטול השחרור בתוך החלון: ההזמנה חוזרת והפרסום החדש נמחק
        undo_clock.advance(60)
        result = await send_tg_callback(test_client, 101, f"jobs:undo_release:{order_id}")
        assert result["outcome"] == "restored"
        await assert_order_status(db_session, order_id, OrderStatus.CLAIMED, claimed_by=101)
        assert (DRIVERS_CHAT_ID, channel_posts[-1]["message_id"]) in fake_transport.deleted
        await assert_outbox_count(db_session, 1, message_type="order_resumed")

        # לחיצה כפולה על אותו כפתור נבלעת
        result = await send_tg_callback(test_client, 101, f"jobs:undo_release:{order_id}")
        assert result["outcome"] == "duplicate"

    async def test_complete_then_undo_then_expired_window(
        self, test_client, db_session, fake_transport, drivers_channel, executor_factory, undo_clock
    ):
        await executor_factory(101)
        order_id = (await create_order_via_api(test_client))["order"]["id"]
        await press_in_channel(test_client, 101, f"order:accept:{order_id}")

        result = await send_tg_callback(test_client, 101, f"jobs:complete:{order_id}")
        assert result["outcome"] == "completed"
        await assert_order_status(db_session, order_id, OrderStatus.DONE)
        await assert_outbox_count(db_session, 1, message_type="order_completed", recipient_id="555")

        result = await send_tg_callback(test_client, 101, f"jobs:undo_complete:{order_id}")
        assert result["outcome"] == "restored"
        await assert_order_status(db_session, order_id, OrderStatus.CLAIMED, claimed_by=101)
        await assert_outbox_count(db_session, 1, message_type="order_restored")

        # שחרור ואז המתנה מעבר לחלון: הביטול נדחה וההזמנה נשארת פתוחה
        await send_tg_callback(test_client, 101, f"jobs:release:{order_id}")
        undo_clock.advance(121)
        result = await send_tg_callback(test_client, 101, f"jobs:undo_release:{order_id}")
        assert result["outcome"] == "expired"
        await assert_order_status(db_session, order_id, OrderStatus.OPEN)

    async def test_many_drivers_press_accept_single_winner(
        self, test_client, db_session, fake_transport, drivers_channel, executor_factory
    ):
        driver_ids = [201, 202, 203, 204, 205]
        for driver_id in driver_ids:
            await executor_factory(driver_id, username=f"d{driver_id}")
        order_id = (await create_order_via_api(test_client))["order"]["id"]

        outcomes = [
            (await press_in_channel(test_client, driver_id, f"order:accept:{order_id}"))["outcome"]
            for driver_id in driver_ids
        ]

        assert outcomes.count("claimed") == 1
        assert set(outcomes[1:]) == {"already_processed"}
        await assert_order_status(db_session, order_id, OrderStatus.CLAIMED, claimed_by=201)
        assert len(fake_transport.deleted) == 1
        loser_answers = [a["text"] for a in fake_transport.answers[1:]]
        assert all("@d201" in text for text in loser_answers)

    async def test_client_cancels_claimed_order(
        self, test_client, db_session, fake_transport, drivers_channel, executor_factory, admin_headers
    ):
        await executor_factory(101)
        order_id = (await create_order_via_api(test_client, client_id=777))["order"]["id"]
        await press_in_channel(test_client, 101, f"order:accept:{order_id}")

        resp = await test_client.post(
            f"/api/orders/{order_id}/cancel", json={"client_id": 777}, headers=admin_headers
        )
        assert resp.status_code == 200
        await assert_outbox_count(
            db_session, 1, message_type="order_cancelled_by_client", recipient_id="101"
        )

        result = await send_tg_callback(test_client, 101, f"jobs:complete:{order_id}")
        assert result["outcome"] == "not_claimed"
        await assert_order_status(db_session, order_id, OrderStatus.CANCELLED)

    async def test_declined_order_hidden_from_feed(
        self, test_client, fake_transport, drivers_channel, executor_factory
    ):
        await executor_factory(101)
        await executor_factory(102)
        order_id = (await create_order_via_api(test_client))["order"]["id"]

        result = await press_in_channel(test_client, 101, f"order:decline:{order_id}")
        assert result["outcome"] == "declined"

        await send_tg(test_client, 101, "/jobs")
        await send_tg(test_client, 102, "/jobs")

        assert "אין כרגע הזמנות פתוחות" in fake_transport.sent_to(101)[-1]["text"]
        other_feed = fake_transport.sent_to(102)[-1]
        assert f"jobs:accept:{order_id}" in fake_transport.callback_data(other_feed)

    async def test_courier_cannot_take_ride(
        self, test_client, db_session, drivers_channel, executor_factory
    ):
        await executor_factory(301, role=ExecutorRole.COURIER)
        order_id = (await create_order_via_api(test_client, kind="ride"))["order"]["id"]

        result = await press_in_channel(test_client, 301, f"order:accept:{order_id}")

        assert result["outcome"] == "forbidden_kind"
        await assert_order_status(db_session, order_id, OrderStatus.OPEN)
