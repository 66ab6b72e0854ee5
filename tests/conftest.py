"""
Shared test fixtures.

The domain services only talk to repositories, the payment processor and
the notifier, so the tests swap those for in-memory doubles that mirror the
production APIs in ``rideflex/infrastructure``.  Every repository call
yields to the event loop once (``asyncio.sleep(0)``) the way a database
round-trip would, which lets ``asyncio.gather`` interleave two
reconciliation triggers exactly where real I/O would.

Conditional writes (``mark_paid``, ``apply_trip_stats``) check and write
without awaiting in between, matching the single-statement ``UPDATE ...
WHERE`` they stand in for.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional

import pytest

from rideflex.domain.distance import haversine_km
from rideflex.domain.enums import (
    BLOCKING_PAYMENT_STATUSES,
    OPEN_PAYMENT_STATUSES,
    RELEASED_PAYMENT_STATUSES,
    SETTLED_PAYMENT_STATUSES,
    DriverStatus,
    PaymentStatus,
    PaymentType,
    ReviewStatus,
    TripPaymentStatus,
    TripStatus,
    VehicleClass,
)
from rideflex.domain.errors import Conflict, UpstreamError
from rideflex.domain.matching import GeoMatcher
from rideflex.domain.payments import PaymentLedger, PaymentMethods
from rideflex.domain.pricing import FareEngine
from rideflex.domain.reviews import ReviewService
from rideflex.domain.trips import TripLifecycle
from rideflex.infrastructure.processor import (
    CheckoutSession,
    PaymentIntent,
    PaymentProcessor,
    ProcessorEvent,
)

# Wednesday 2024-01-10 12:00 IST: no peak, weekend or late-night surge
OFF_PEAK = datetime(2024, 1, 10, 6, 30, tzinfo=timezone.utc)


async def _io():
    await asyncio.sleep(0)


# ── In-memory store ───────────────────────────────────────────────────


class InMemoryStore:
    """Tables as dicts of mutable rows."""

    def __init__(self, clock):
        self.clock = clock
        self.riders: dict[int, SimpleNamespace] = {}
        self.drivers: dict[int, SimpleNamespace] = {}
        self.trips: dict[int, SimpleNamespace] = {}
        self.route_points: list[SimpleNamespace] = []
        self.payments: dict[int, SimpleNamespace] = {}
        self.reviews: dict[int, SimpleNamespace] = {}
        self._ids: dict[str, int] = {}

    def next_id(self, table: str) -> int:
        self._ids[table] = self._ids.get(table, 0) + 1
        return self._ids[table]

    def add_rider(self, **fields) -> SimpleNamespace:
        rid = self.next_id("riders")
        rider = SimpleNamespace(
            id=rid,
            name=f"Rider {rid}",
            email=f"rider{rid}@example.com",
            phone_no=None,
            stripe_customer_id=None,
            total_trips=0,
            total_amount_spent=0,
            last_payment_date=None,
        )
        vars(rider).update(fields)
        self.riders[rid] = rider
        return rider

    def add_driver(self, location=None, **fields) -> SimpleNamespace:
        did = self.next_id("drivers")
        driver = SimpleNamespace(
            id=did,
            name=f"Driver {did}",
            email=f"driver{did}@example.com",
            phone_no="+919800000000",
            photo=None,
            vehicle_make="Maruti",
            vehicle_model="Dzire",
            license_plate=f"KA01AB{did:04d}",
            vehicle_class=VehicleClass.SEDAN,
            status=DriverStatus.ONLINE,
            current_location=location,
            is_active=True,
            is_approved=True,
            total_trips=0,
            acceptance_rate=0.9,
            rating=0.0,
            total_reviews=0,
        )
        vars(driver).update(fields)
        self.drivers[did] = driver
        return driver

    def add_trip(self, rider_id: int, **fields) -> SimpleNamespace:
        tid = self.next_id("trips")
        trip = SimpleNamespace(
            id=tid,
            rider_id=rider_id,
            driver_id=None,
            pickup_lat=12.9716,
            pickup_lng=77.5946,
            pickup_address="MG Road",
            dropoff_lat=12.9352,
            dropoff_lng=77.6245,
            dropoff_address="Koramangala",
            stops=[],
            vehicle_class=VehicleClass.SEDAN,
            status=TripStatus.REQUESTED,
            base_fare=0,
            distance_fare=0,
            time_fare=0,
            surge_multiplier=1.0,
            total_fare=0,
            fare_currency="INR",
            distance_km=0.0,
            estimated_duration_min=0,
            actual_duration_min=0,
            requested_at=self.clock(),
            driver_assigned_at=None,
            driver_arriving_at=None,
            driver_arrived_at=None,
            trip_started_at=None,
            completed_at=None,
            payment_status=TripPaymentStatus.UNPAID,
            payment_id=None,
            review_id=None,
        )
        vars(trip).update(fields)
        self.trips[tid] = trip
        return trip


class FakeTripRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create_trip(
        self, *, rider_id, pickup, dropoff, stops, vehicle_class,
        distance_km, estimated_duration_min, requested_at,
    ):
        await _io()
        return self.store.add_trip(
            rider_id,
            pickup_lat=pickup.latitude,
            pickup_lng=pickup.longitude,
            pickup_address=pickup.address,
            dropoff_lat=dropoff.latitude,
            dropoff_lng=dropoff.longitude,
            dropoff_address=dropoff.address,
            stops=stops,
            vehicle_class=vehicle_class,
            distance_km=distance_km,
            estimated_duration_min=estimated_duration_min,
            requested_at=requested_at,
        )

    async def get_by_id(self, trip_id):
        await _io()
        return self.store.trips.get(trip_id)

    async def get_for_update(self, trip_id):
        await _io()
        return self.store.trips.get(trip_id)

    async def add_route_point(self, trip, *, lng, lat, recorded_at):
        await _io()
        point = SimpleNamespace(trip_id=trip.id, lng=lng, lat=lat, recorded_at=recorded_at)
        self.store.route_points.append(point)
        return point

    async def mark_paid(self, trip_id, payment_id):
        await _io()
        trip = self.store.trips.get(trip_id)
        if trip is not None:
            trip.payment_status = TripPaymentStatus.PAID
            trip.payment_id = payment_id
        return trip


class FakeDriverRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get_by_id(self, driver_id):
        await _io()
        return self.store.drivers.get(driver_id)

    async def find_eligible_near(self, lng, lat, radius_m):
        await _io()
        found = []
        for driver in self.store.drivers.values():
            if not (
                driver.status == DriverStatus.ONLINE
                and driver.is_active
                and driver.is_approved
                and driver.current_location is not None
            ):
                continue
            d_lng, d_lat = driver.current_location
            # the spheroid measure used by PostGIS differs slightly
            if haversine_km(lat, lng, d_lat, d_lng) * 1000 <= radius_m * 1.003:
                found.append((driver, d_lng, d_lat))
        found.sort(key=lambda row: haversine_km(lat, lng, row[2], row[1]))
        return found

    async def set_location(self, driver, lng, lat):
        await _io()
        driver.current_location = (lng, lat)

    async def clear_location(self, driver):
        await _io()
        driver.current_location = None

    async def set_rating(self, driver, *, rating, total_reviews):
        await _io()
        driver.rating = rating
        driver.total_reviews = total_reviews


class FakeRiderRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get_by_id(self, rider_id):
        await _io()
        return self.store.riders.get(rider_id)

    async def apply_trip_stats(self, rider, *, expected_trips, total_amount_spent, paid_at):
        await _io()
        if rider.total_trips >= expected_trips:
            return False
        rider.total_trips = expected_trips
        rider.total_amount_spent = total_amount_spent
        rider.last_payment_date = paid_at
        return True


class FakePaymentRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create_payment(self, **fields):
        await _io()
        if fields.get("type") == PaymentType.TRIP_PAYMENT:
            for other in self.store.payments.values():
                if (
                    other.trip_id == fields["trip_id"]
                    and other.type == PaymentType.TRIP_PAYMENT
                    and other.status not in RELEASED_PAYMENT_STATUSES
                ):
                    raise Conflict("Trip already has an active payment")
        pid = self.store.next_id("payments")
        payment = SimpleNamespace(
            id=pid,
            tip_amount=0,
            discount=0,
            promo_code=None,
            stripe_session_id=None,
            session_url=None,
            stripe_payment_intent_id=None,
            stripe_customer_id=None,
            expires_at=None,
            completed_at=None,
            failed_at=None,
            expired_at=None,
            failure_reason=None,
            refunded_amount=0,
            refund_reason=None,
            created_at=self.store.clock() + timedelta(microseconds=pid),
        )
        vars(payment).update(fields)
        self.store.payments[pid] = payment
        return payment

    async def get_by_id(self, payment_id):
        await _io()
        return self.store.payments.get(payment_id)

    async def get_by_intent_id(self, intent_id):
        await _io()
        for payment in self.store.payments.values():
            if intent_id and payment.stripe_payment_intent_id == intent_id:
                return payment
        return None

    async def find_blocking_for_trip(self, trip_id):
        await _io()
        for payment in self.store.payments.values():
            if (
                payment.trip_id == trip_id
                and payment.type == PaymentType.TRIP_PAYMENT
                and payment.status in BLOCKING_PAYMENT_STATUSES
            ):
                return payment
        return None

    async def mark_paid(
        self, payment, *, completed_at, stripe_payment_intent_id=None, stripe_customer_id=None
    ):
        await _io()
        if payment.status not in OPEN_PAYMENT_STATUSES:
            return False
        payment.status = PaymentStatus.PAID
        payment.completed_at = completed_at
        if stripe_payment_intent_id:
            payment.stripe_payment_intent_id = stripe_payment_intent_id
        if stripe_customer_id:
            payment.stripe_customer_id = stripe_customer_id
        return True

    def _settled(self, rider_id):
        return [
            p for p in self.store.payments.values()
            if p.rider_id == rider_id
            and p.type == PaymentType.TRIP_PAYMENT
            and p.status in SETTLED_PAYMENT_STATUSES
        ]

    async def count_paid_before(self, rider_id, created_at, *, exclude_id):
        await _io()
        return sum(
            1 for p in self._settled(rider_id)
            if p.id != exclude_id
            and (p.created_at, p.id) < (created_at, exclude_id)
        )

    async def sum_paid_amount(self, rider_id):
        await _io()
        return sum(p.amount for p in self._settled(rider_id))

    async def list_for_party(self, *, rider_id=None, driver_id=None, offset=0, limit=10):
        await _io()
        if driver_id is not None:
            rows = [p for p in self.store.payments.values() if p.driver_id == driver_id]
        else:
            rows = [p for p in self.store.payments.values() if p.rider_id == rider_id]
        rows.sort(key=lambda p: (p.created_at, p.id), reverse=True)
        return rows[offset:offset + limit], len(rows)

    async def expire_stale(self, now):
        await _io()
        expired = 0
        for payment in self.store.payments.values():
            if (
                payment.status in (PaymentStatus.CREATED, PaymentStatus.PENDING)
                and payment.expires_at is not None
                and payment.expires_at < now
            ):
                payment.status = PaymentStatus.EXPIRED
                payment.expired_at = now
                expired += 1
        return expired


class FakeReviewRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def create_review(self, **fields):
        await _io()
        if any(r.trip_id == fields["trip_id"] for r in self.store.reviews.values()):
            raise Conflict("Trip has already been reviewed")
        rid = self.store.next_id("reviews")
        review = SimpleNamespace(
            id=rid,
            comment="",
            tags=[],
            status=ReviewStatus.ACTIVE,
            created_at=self.store.clock() + timedelta(microseconds=rid),
        )
        vars(review).update(fields)
        self.store.reviews[rid] = review
        return review

    async def get_by_id(self, review_id):
        await _io()
        return self.store.reviews.get(review_id)

    async def get_by_trip(self, trip_id):
        await _io()
        for review in self.store.reviews.values():
            if review.trip_id == trip_id:
                return review
        return None

    async def set_status(self, review, status):
        await _io()
        review.status = status

    def _active(self, driver_id):
        return [
            r for r in self.store.reviews.values()
            if r.driver_id == driver_id and r.status == ReviewStatus.ACTIVE
        ]

    async def list_for_driver(self, driver_id, *, offset=0, limit=10):
        await _io()
        rows = sorted(self._active(driver_id), key=lambda r: (r.created_at, r.id), reverse=True)
        return rows[offset:offset + limit], len(rows)

    async def rating_stats(self, driver_id):
        await _io()
        ratings = [r.rating for r in self._active(driver_id)]
        if not ratings:
            return 0.0, 0
        return sum(ratings) / len(ratings), len(ratings)


# ── Processor / notifier doubles ──────────────────────────────────────


class FakeProcessor(PaymentProcessor):
    """Records calls; intents succeed unless ``intent_status`` says otherwise."""

    def __init__(self, clock):
        self.clock = clock
        self.calls: list[tuple[str, dict]] = []
        self.intents: dict[str, PaymentIntent] = {}
        self.intent_status = "succeeded"
        self.fail_with: Optional[str] = None
        self.methods: dict[str, list[dict]] = {}
        self._n = 0

    def _record(self, _op, **kwargs):
        if self.fail_with:
            raise UpstreamError(self.fail_with)
        self.calls.append((_op, kwargs))
        self._n += 1
        return self._n

    def called(self, name) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    async def create_checkout_session(self, **kwargs):
        n = self._record("create_checkout_session", **kwargs)
        return CheckoutSession(
            id=f"cs_test_{n}",
            url=f"https://checkout.stripe.test/c/cs_test_{n}",
            expires_at=self.clock() + timedelta(minutes=30),
        )

    async def create_payment_intent(self, **kwargs):
        n = self._record("create_payment_intent", **kwargs)
        intent = PaymentIntent(
            id=f"pi_test_{n}",
            status=self.intent_status,
            client_secret=f"pi_test_{n}_secret",
        )
        self.intents[intent.id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        self._record("retrieve_payment_intent", intent_id=intent_id)
        return self.intents[intent_id]

    async def refund(self, intent_id, *, amount_minor):
        n = self._record("refund", intent_id=intent_id, amount_minor=amount_minor)
        return f"re_test_{n}"

    async def create_customer(self, **kwargs):
        n = self._record("create_customer", **kwargs)
        return f"cus_test_{n}"

    async def list_payment_methods(self, customer_id):
        self._record("list_payment_methods", customer_id=customer_id)
        return list(self.methods.get(customer_id, []))

    async def attach_payment_method(self, payment_method_id, customer_id):
        self._record("attach_payment_method", payment_method_id=payment_method_id)
        card = {"id": payment_method_id, "brand": "visa", "last4": "4242",
                "exp_month": 12, "exp_year": 2030}
        self.methods.setdefault(customer_id, []).append(card)
        return card

    async def detach_payment_method(self, payment_method_id):
        self._record("detach_payment_method", payment_method_id=payment_method_id)
        for cards in self.methods.values():
            cards[:] = [card for card in cards if card["id"] != payment_method_id]

    async def set_default_payment_method(self, customer_id, payment_method_id):
        self._record(
            "set_default_payment_method",
            customer_id=customer_id, payment_method_id=payment_method_id,
        )

    def construct_event(self, payload, signature):
        body = json.loads(payload)
        return ProcessorEvent(
            id=body["id"], type=body["type"], data=body["data"]["object"]
        )


class FakeNotifier:
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []
        self.broken = False

    async def send(self, event, payload):
        if self.broken:
            raise ConnectionError("smtp down")
        self.sent.append((event, payload))

    def events(self) -> list[str]:
        return [event for event, _ in self.sent]


class Clock:
    def __init__(self, now: datetime = OFF_PEAK):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(clock) -> InMemoryStore:
    return InMemoryStore(clock)


@pytest.fixture
def trips_repo(store):
    return FakeTripRepository(store)


@pytest.fixture
def drivers_repo(store):
    return FakeDriverRepository(store)


@pytest.fixture
def riders_repo(store):
    return FakeRiderRepository(store)


@pytest.fixture
def payments_repo(store):
    return FakePaymentRepository(store)


@pytest.fixture
def processor(clock) -> FakeProcessor:
    return FakeProcessor(clock)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def fare_engine(clock) -> FareEngine:
    """No surge factors, so fares are deterministic."""
    return FareEngine(surge_factors=[], clock=clock)


@pytest.fixture
def matcher(drivers_repo) -> GeoMatcher:
    return GeoMatcher(drivers_repo)


@pytest.fixture
def lifecycle(trips_repo, riders_repo, drivers_repo, fare_engine, notifier, clock):
    return TripLifecycle(
        trips=trips_repo,
        riders=riders_repo,
        drivers=drivers_repo,
        fare_engine=fare_engine,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def ledger(payments_repo, trips_repo, riders_repo, drivers_repo, processor, notifier, clock):
    return PaymentLedger(
        payments=payments_repo,
        trips=trips_repo,
        riders=riders_repo,
        processor=processor,
        notifier=notifier,
        drivers=drivers_repo,
        promo_codes={"FIRST10": 10},
        clock=clock,
    )


@pytest.fixture
def payment_methods(riders_repo, processor):
    return PaymentMethods(riders_repo, processor)


@pytest.fixture
def reviews_repo(store):
    return FakeReviewRepository(store)


@pytest.fixture
def review_service(reviews_repo, trips_repo, drivers_repo, notifier):
    return ReviewService(
        reviews=reviews_repo,
        trips=trips_repo,
        drivers=drivers_repo,
        notifier=notifier,
    )


@pytest.fixture
def rider(store):
    return store.add_rider(name="Aarav Sharma", email="aarav@example.com")


@pytest.fixture
def driver(store):
    return store.add_driver(location=(77.6050, 12.9756), name="Ravi Kumar")


@pytest.fixture
def completed_trip(store, rider, driver, clock):
    """A finished trip with a 200 rupee fare, ready for checkout."""
    return store.add_trip(
        rider.id,
        driver_id=driver.id,
        status=TripStatus.COMPLETED,
        base_fare=50,
        distance_fare=100,
        time_fare=50,
        total_fare=200,
        distance_km=8.33,
        completed_at=clock(),
    )
