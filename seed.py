"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 6 sample riders
  - 10 sample drivers (online around central Bengaluru, a few unavailable)
  - 3 sample trips (one requested, one in progress, one completed and unpaid)
"""

import asyncio
from datetime import datetime, timedelta, timezone

from geoalchemy2 import WKTElement
from sqlalchemy import text

from rideflex.domain.entities import Location
from rideflex.domain.enums import DriverStatus, TripStatus, VehicleClass
from rideflex.domain.pricing import FareEngine
from rideflex.domain.trips import apply_fare
from rideflex.infrastructure.database import async_session_factory, engine
from rideflex.infrastructure.models import DriverModel, RiderModel, TripModel


RIDERS = [
    {"name": "Aarav Sharma", "email": "aarav@example.com", "phone_no": "+919800000001"},
    {"name": "Priya Patel", "email": "priya@example.com", "phone_no": "+919800000002"},
    {"name": "Rohan Mehta", "email": "rohan@example.com", "phone_no": "+919800000003"},
    {"name": "Sneha Gupta", "email": "sneha@example.com", "phone_no": "+919800000004"},
    {"name": "Ananya Reddy", "email": "ananya@example.com", "phone_no": None},
    {"name": "Karan Joshi", "email": "karan@example.com", "phone_no": None},
]

DRIVERS = [
    # name, class, make, model, plate, status, lat, lng
    ("Ravi Kumar", VehicleClass.SEDAN, "Maruti", "Dzire", "KA01AB1234", DriverStatus.ONLINE, 12.9760, 77.6055),
    ("Suresh Naik", VehicleClass.SEDAN, "Hyundai", "Aura", "KA01AB2345", DriverStatus.ONLINE, 12.9716, 77.5946),
    ("Manjunath G", VehicleClass.SUV, "Toyota", "Innova", "KA02CD3456", DriverStatus.ONLINE, 12.9784, 77.6408),
    ("Imran Pasha", VehicleClass.SUV, "Mahindra", "XUV700", "KA03EF4567", DriverStatus.ONLINE, 12.9352, 77.6245),
    ("Lakshmi Devi", VehicleClass.VAN, "Force", "Urbania", "KA04GH5678", DriverStatus.ONLINE, 12.9698, 77.7500),
    ("Venkatesh R", VehicleClass.SEDAN, "Honda", "Amaze", "KA05IJ6789", DriverStatus.ONLINE, 12.9900, 77.5700),
    # Unavailable: never returned by the nearby search
    ("Prakash S", VehicleClass.SEDAN, "Tata", "Tigor", "KA01KL7890", DriverStatus.BUSY, 12.9750, 77.6040),
    ("Deepa M", VehicleClass.SEDAN, "Maruti", "Ciaz", "KA01MN8901", DriverStatus.OFFLINE, 12.9770, 77.6060),
    ("Farhan Ali", VehicleClass.SUV, "Kia", "Carens", "KA01OP9012", DriverStatus.BREAK, 12.9740, 77.6030),
    ("Gopal Rao", VehicleClass.VAN, "Maruti", "Eeco", "KA01QR0123", DriverStatus.ONLINE, None, None),
]


def _point(lat, lng):
    if lat is None or lng is None:
        return None
    return WKTElement(f"POINT({lng} {lat})", srid=4326)


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM riders"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Riders ────────────────────────────────────────────────────
        riders = [RiderModel(**r) for r in RIDERS]
        session.add_all(riders)
        await session.flush()
        print(f"  Created {len(riders)} riders")

        # ── Drivers ───────────────────────────────────────────────────
        drivers = []
        for i, (name, vclass, make, model, plate, status, lat, lng) in enumerate(DRIVERS):
            drivers.append(
                DriverModel(
                    name=name,
                    email=f"driver{i + 1}@example.com",
                    licence_no=f"KA-DL-{1000 + i}",
                    vehicle_make=make,
                    vehicle_model=model,
                    license_plate=plate,
                    vehicle_class=vclass,
                    status=status,
                    current_location=_point(lat, lng),
                    is_active=True,
                    is_approved=True,
                    acceptance_rate=0.9,
                )
            )
        session.add_all(drivers)
        await session.flush()
        print(f"  Created {len(drivers)} drivers")

        # ── Trips ─────────────────────────────────────────────────────
        fares = FareEngine()
        now = datetime.now(timezone.utc)
        trips_data = [
            # requested, waiting for a driver
            (riders[0], None, TripStatus.REQUESTED, (12.9716, 77.5946, "Vidhana Soudha"), (12.9352, 77.6245, "Koramangala")),
            # in progress with a busy driver
            (riders[1], drivers[6], TripStatus.TRIP_STARTED, (12.9756, 77.6050, "MG Road"), (12.9698, 77.7500, "Whitefield")),
            # completed, ready for checkout
            (riders[2], drivers[0], TripStatus.COMPLETED, (12.9784, 77.6408, "Indiranagar"), (12.9279, 77.6271, "Koramangala 5th Block")),
        ]
        for rider, driver, status, (p_lat, p_lng, p_addr), (d_lat, d_lng, d_addr) in trips_data:
            estimate = fares.estimate(
                Location(longitude=p_lng, latitude=p_lat, address=p_addr),
                Location(longitude=d_lng, latitude=d_lat, address=d_addr),
                VehicleClass.SEDAN,
            )
            trip = TripModel(
                rider_id=rider.id,
                driver_id=driver.id if driver else None,
                pickup_lat=p_lat,
                pickup_lng=p_lng,
                pickup_address=p_addr,
                dropoff_lat=d_lat,
                dropoff_lng=d_lng,
                dropoff_address=d_addr,
                stops=[],
                vehicle_class=VehicleClass.SEDAN,
                status=status,
                distance_km=estimate.distance_km,
                estimated_duration_min=estimate.estimated_duration_min,
                requested_at=now - timedelta(minutes=40),
            )
            apply_fare(trip, estimate.fare)
            if driver:
                trip.driver_assigned_at = now - timedelta(minutes=35)
                trip.driver_arrived_at = now - timedelta(minutes=30)
                trip.trip_started_at = now - timedelta(minutes=28)
            if status == TripStatus.COMPLETED:
                trip.completed_at = now - timedelta(minutes=5)
                trip.actual_duration_min = estimate.estimated_duration_min
            session.add(trip)
        await session.flush()
        print(f"  Created {len(trips_data)} trips")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
