"""
תרחיש - מחזור תשלום שבועי: תזכורות, חסימה אחרי תקופת חסד, שחרור בתשלום

מכסה:
- יצירת דוח שבועי ותזכורות בשלושת השלבים
- חסימה אוטומטית אחרי מועד החסד + רשימת פרטים חסומים
- רוכב חסום לא יכול להתחבר ולא להירשם מחדש עם אותם פרטים
- אישור תשלום מ-Paystack משחרר את החסימה
"""
import json
from datetime import timedelta

import pytest
from httpx import AsyncClient

from app.api.dependencies.webhook_auth import sign_payload
from app.core.exceptions import CredentialsBlockedError
from app.db.models.rider_payout import PaidBy, PayoutStatus
from app.db.models.user import User, UserRole
from app.domain.services.event_publisher import EventType
from app.domain.services.payout_scheduler import PayoutScheduler
from app.domain.services.user_service import UserService
from tests.conftest import IKEJA_NEARBY, TEST_WEBHOOK_SECRET, auth_headers
from tests.scenarios.conftest import fetch_payout


@pytest.mark.scenario
@pytest.mark.slow
class TestOverdueBlocking:

    async def test_weekly_cycle(
        self, test_client: AsyncClient, db_session, customer, rider, order_factory, deliver_order,
        publisher, job_lock,
    ):
        # 1. משלוח אחד - 130 עמלה על 1300
        await deliver_order(await order_factory(customer, price=1300), rider)
        payout = await fetch_payout(db_session, rider.id)
        payout_id, reference = payout.id, payout.payment_reference_code
        assert payout.total_commission == 130

        scheduler = PayoutScheduler(db_session, publisher, job_lock)

        # 2. יצירת הדוחות בתחילת השבוע הבא לא משנה את הדוח הקיים
        generated = await scheduler.run("generate_weekly_payouts", payout.week_end + timedelta(minutes=1))
        assert generated["week_start"] == payout.week_start.isoformat()
        assert (await fetch_payout(db_session, rider.id)).id == payout_id

        # 3. שלוש תזכורות: יום לפני, ביום התשלום ובתקופת החסד
        await scheduler.run("payment_reminder", payout.payment_due_at - timedelta(days=1))
        await scheduler.run("payment_due_reminder", payout.payment_due_at - timedelta(hours=2))
        await scheduler.run("grace_period_reminder", payout.week_end + timedelta(days=1))
        reminders = publisher.of_type(EventType.PAYOUT_REMINDER)
        assert [r.data["stage"] for r in reminders] == ["due_tomorrow", "due_today", "grace_period"]
        assert {r.data["amount_due"] for r in reminders} == {130}
        assert {r.data["reference"] for r in reminders} == {reference}

        # 4. לפני סוף תקופת החסד - אין חסימה
        early = await scheduler.run("block_overdue_riders", payout.grace_deadline_at - timedelta(minutes=1))
        assert early["blocked"] == 0

        # 5. אחרי תקופת החסד - הרוכב נחסם
        result = await scheduler.run("block_overdue_riders", payout.grace_deadline_at + timedelta(minutes=5))
        assert result["blocked"] == 1
        await db_session.refresh(rider)
        assert rider.payment_blocked is True
        assert rider.account_deactivated is True
        [blocked_event] = publisher.of_type(EventType.ACCOUNT_BLOCKED)
        assert blocked_event.data["amount_due"] == 130

        # הרצה חוזרת לא חוסמת פעמיים
        again = await scheduler.run("block_overdue_riders", payout.grace_deadline_at + timedelta(hours=1))
        assert again["blocked"] == 0

        # 6. רוכב חסום לא יכול להתחבר
        response = await test_client.put(
            "/api/riders/me/presence",
            json={"lat": IKEJA_NEARBY[0], "lng": IKEJA_NEARBY[1]},
            headers=auth_headers(rider),
        )
        assert response.status_code == 403

        # 7. ולא להירשם מחדש עם אותו אימייל
        with pytest.raises(CredentialsBlockedError):
            await UserService(db_session).register_user(
                UserRole.RIDER, name="Same Person", email=rider.email, phone_number="+2348099999999",
            )

        # 8. תשלום דרך Paystack משחרר את החסימה
        body = json.dumps({
            "event": "charge.success",
            "data": {"reference": reference, "amount": 130 * 100, "currency": "NGN"},
        }).encode()
        response = await test_client.post(
            "/api/payouts/webhooks/paystack",
            content=body,
            headers={"X-Paystack-Signature": sign_payload(body, TEST_WEBHOOK_SECRET)},
        )
        assert response.json() == {"status": "ok", "payout_id": payout_id}

        payout = await fetch_payout(db_session, rider.id)
        assert payout.status == PayoutStatus.PAID
        assert payout.marked_paid_by == PaidBy.PAYSTACK
        rider = await db_session.get(User, rider.id, populate_existing=True)
        assert rider.payment_blocked is False
        assert publisher.of_type(EventType.ACCOUNT_UNBLOCKED)

        # 9. הרוכב חוזר לעבודה, והפרטים שוחררו מרשימת החסומים
        response = await test_client.put(
            "/api/riders/me/presence",
            json={"lat": IKEJA_NEARBY[0], "lng": IKEJA_NEARBY[1]},
            headers=auth_headers(rider),
        )
        assert response.status_code == 200
        assert response.json()["online"] is True
