from datetime import datetime, timedelta, timezone

import pytest

import payments
from errors import InvalidTransition, NotAuthorized, PaymentMismatch, RefundWindowExpired
from lifecycle import Actor, transition

ADMIN = Actor("admin", "ops")


class FakeGateway:
    key_id = "rzp_test_key"

    def __init__(self, valid=True):
        self.valid = valid
        self.orders = []
        self.refunds = []

    def create_order(self, amount, receipt, notes=None):
        self.orders.append((amount, receipt))
        return {"id": f"order_{len(self.orders)}"}

    def refund(self, payment_id, amount, notes=None):
        self.refunds.append((payment_id, amount))
        return {"id": f"rfnd_{len(self.refunds)}"}

    def verify_signature(self, order_id, payment_id, signature):
        return self.valid


@pytest.fixture
def driver_actor(driver):
    return Actor("driver", str(driver["_id"]))


@pytest.fixture
def rider_actor(rider):
    return Actor("rider", str(rider["_id"]))


def _details(booking):
    return booking["payment"]["partial_payment_details"]


class TestPartialPayments:
    def test_online_then_cash_completes(self, seeded_db, vehicle, book, driver_actor):
        booking = book(vehicle)
        online = _details(booking)["online_amount"]

        paid = payments.confirm_online_payment(seeded_db, booking["_id"], online, "pay_1")
        assert _details(paid)["online_payment_status"] == "completed"
        assert paid["payment"]["status"] == "pending"

        done = payments.collect_cash(seeded_db, booking["_id"], driver_actor)
        assert _details(done)["cash_payment_status"] == "collected"
        assert _details(done)["collected_by"] == driver_actor.ref()
        assert done["payment"]["status"] == "completed"
        assert done["payment"]["gateway_payment_id"] == "pay_1"

    def test_cash_then_online_completes(self, seeded_db, vehicle, book, driver_actor):
        booking = book(vehicle)
        collected = payments.collect_cash(seeded_db, booking["_id"], driver_actor)
        assert collected["payment"]["status"] == "pending"

        done = payments.confirm_online_payment(seeded_db, booking["_id"], _details(booking)["online_amount"])
        assert done["payment"]["status"] == "completed"

    def test_cash_collected_during_online_confirmation(self, seeded_db, vehicle, book, driver_actor, monkeypatch):
        booking = book(vehicle)
        read = payments.get_booking
        calls = []

        def stale_read(db, booking_id):
            if not calls:
                calls.append(booking_id)
                snapshot = read(db, booking_id)
                payments.collect_cash(db, booking_id, driver_actor)
                return snapshot
            return read(db, booking_id)

        monkeypatch.setattr(payments, "get_booking", stale_read)
        done = payments.confirm_online_payment(seeded_db, booking["_id"], _details(booking)["online_amount"])

        assert _details(done)["online_payment_status"] == "completed"
        assert _details(done)["cash_payment_status"] == "collected"
        assert done["payment"]["status"] == "completed"
        assert done["payment"]["completed_at"] is not None

    def test_wrong_amount(self, seeded_db, vehicle, book):
        booking = book(vehicle)
        with pytest.raises(PaymentMismatch):
            payments.confirm_online_payment(seeded_db, booking["_id"], booking["pricing"]["total_amount"])

    def test_cash_collected_once(self, seeded_db, vehicle, book, driver_actor):
        booking = book(vehicle)
        payments.collect_cash(seeded_db, booking["_id"], driver_actor)
        with pytest.raises(InvalidTransition):
            payments.collect_cash(seeded_db, booking["_id"], driver_actor)

    def test_rider_cannot_collect_cash(self, seeded_db, vehicle, book, rider_actor):
        booking = book(vehicle)
        with pytest.raises(NotAuthorized):
            payments.collect_cash(seeded_db, booking["_id"], rider_actor)

    def test_full_payment_has_no_cash_part(self, seeded_db, vehicle, book, driver_actor):
        booking = book(vehicle, payment_method="upi")
        with pytest.raises(InvalidTransition):
            payments.collect_cash(seeded_db, booking["_id"], driver_actor)

    def test_cancelled_booking_is_not_payable(self, seeded_db, vehicle, book, rider_actor, driver_actor):
        booking = book(vehicle)
        transition(seeded_db, booking["_id"], "cancelled", rider_actor)
        with pytest.raises(InvalidTransition):
            payments.collect_cash(seeded_db, booking["_id"], driver_actor)


def test_full_online_payment(seeded_db, vehicle, book):
    booking = book(vehicle, payment_method="card")
    done = payments.confirm_online_payment(seeded_db, booking["_id"], booking["pricing"]["total_amount"])
    assert done["payment"]["status"] == "completed"
    with pytest.raises(InvalidTransition):
        payments.confirm_online_payment(seeded_db, booking["_id"], booking["pricing"]["total_amount"])


def test_gateway_order_and_verification(seeded_db, vehicle, book, rider_actor):
    booking = book(vehicle)
    gateway = FakeGateway()

    order = payments.create_gateway_order(seeded_db, booking["_id"], rider_actor, gateway)
    assert order["amount"] == _details(booking)["online_amount"]
    assert order["key_id"] == "rzp_test_key"
    assert gateway.orders == [(order["amount"], booking["booking_number"])]

    paid = payments.verify_gateway_payment(seeded_db, booking["_id"], rider_actor, gateway,
                                           order["order_id"], "pay_9", "sig")
    assert _details(paid)["online_payment_status"] == "completed"
    assert paid["payment"]["gateway_payment_id"] == "pay_9"


def test_bad_signature_is_rejected(seeded_db, vehicle, book, rider_actor):
    booking = book(vehicle)
    gateway = FakeGateway(valid=False)
    order = payments.create_gateway_order(seeded_db, booking["_id"], rider_actor, gateway)
    with pytest.raises(PaymentMismatch):
        payments.verify_gateway_payment(seeded_db, booking["_id"], rider_actor, gateway,
                                        order["order_id"], "pay_9", "forged")


def test_order_from_another_booking_is_rejected(seeded_db, vehicle, book, rider_actor):
    booking = book(vehicle)
    gateway = FakeGateway()
    payments.create_gateway_order(seeded_db, booking["_id"], rider_actor, gateway)
    with pytest.raises(PaymentMismatch):
        payments.verify_gateway_payment(seeded_db, booking["_id"], rider_actor, gateway,
                                        "order_other", "pay_9", "sig")


class TestRefunds:
    CANCELLED_AT = datetime(2030, 4, 1, 12, 0, tzinfo=timezone.utc)

    def _paid_and_cancelled(self, db, book, vehicle, rider_actor):
        booking = book(vehicle, payment_method="upi")
        payments.confirm_online_payment(db, booking["_id"], booking["pricing"]["total_amount"], "pay_1")
        transition(db, booking["_id"], "cancelled", rider_actor, now=self.CANCELLED_AT)
        return booking

    def test_refund_within_window(self, seeded_db, vehicle, book, rider_actor):
        booking = self._paid_and_cancelled(seeded_db, book, vehicle, rider_actor)
        gateway = FakeGateway()

        refunded = payments.process_refund(seeded_db, booking["_id"], ADMIN, gateway=gateway,
                                           now=self.CANCELLED_AT + timedelta(hours=3))
        total = booking["pricing"]["total_amount"]
        assert refunded["cancellation"]["refund_amount"] == total
        assert refunded["cancellation"]["refund_status"] == "processed"
        assert refunded["cancellation"]["refund_id"] == "rfnd_1"
        assert refunded["payment"]["status"] == "refunded"
        assert gateway.refunds == [("pay_1", total)]

    def test_refund_after_window(self, seeded_db, vehicle, book, rider_actor):
        booking = self._paid_and_cancelled(seeded_db, book, vehicle, rider_actor)
        with pytest.raises(RefundWindowExpired):
            payments.process_refund(seeded_db, booking["_id"], ADMIN, now=self.CANCELLED_AT + timedelta(hours=25))

    def test_refund_processed_once(self, seeded_db, vehicle, book, rider_actor):
        booking = self._paid_and_cancelled(seeded_db, book, vehicle, rider_actor)
        later = self.CANCELLED_AT + timedelta(hours=1)
        payments.process_refund(seeded_db, booking["_id"], ADMIN, now=later)
        with pytest.raises(InvalidTransition):
            payments.process_refund(seeded_db, booking["_id"], ADMIN, now=later)

    def test_only_cancelled_bookings(self, seeded_db, vehicle, book):
        booking = book(vehicle)
        with pytest.raises(InvalidTransition):
            payments.process_refund(seeded_db, booking["_id"], ADMIN)

    def test_only_admins(self, seeded_db, vehicle, book, rider_actor):
        booking = self._paid_and_cancelled(seeded_db, book, vehicle, rider_actor)
        with pytest.raises(NotAuthorized):
            payments.process_refund(seeded_db, booking["_id"], rider_actor)

    def test_unpaid_booking_settles_without_gateway(self, seeded_db, vehicle, book, rider_actor):
        booking = book(vehicle)
        transition(seeded_db, booking["_id"], "cancelled", rider_actor, now=self.CANCELLED_AT)
        gateway = FakeGateway()
        settled = payments.process_refund(seeded_db, booking["_id"], ADMIN, gateway=gateway,
                                          now=self.CANCELLED_AT + timedelta(hours=1))
        assert settled["cancellation"]["refund_status"] == "processed"
        assert settled["payment"]["status"] == "pending"
        assert gateway.refunds == []
