#!/usr/bin/env python3
"""Seed online photographers around Tokyo for local development"""

import asyncio
import uuid

from instantphoto.db.database import AsyncSessionLocal, init_db
from instantphoto.schemas.photographers import LocationUpdate
from instantphoto.services.locations import LocationRegistry

STANDARD_RATES = {"15": 3000, "30": 5000, "60": 9000}

SAMPLE_PHOTOGRAPHERS = [
    {
        "display_name": "Aiko Tanaka",
        "latitude": 35.6595,
        "longitude": 139.7005,
        "response_radius_m": 2000,
        "instant_rates": {"portrait": STANDARD_RATES, "couple": STANDARD_RATES},
    },
    {
        "display_name": "Kenji Sato",
        "latitude": 35.6620,
        "longitude": 139.7040,
        "response_radius_m": 1500,
        "instant_rates": {"portrait": {"15": 2500, "30": 4500}, "group": {"30": 7000, "60": 12000}},
    },
    {
        "display_name": "Mei Watanabe",
        "latitude": 35.6586,
        "longitude": 139.7454,
        "response_radius_m": 3000,
        "instant_rates": {"landscape": STANDARD_RATES, "family": {"30": 6000, "60": 10000}},
    },
    {
        "display_name": "Hiroshi Kobayashi",
        "latitude": 35.7148,
        "longitude": 139.7967,
        "response_radius_m": 1000,
        "instant_rates": {"pet": {"15": 2000, "30": 3500}, "portrait": STANDARD_RATES},
    },
]


async def seed_photographers():
    """Upsert sample photographers with stable ids"""
    await init_db()
    async with AsyncSessionLocal() as session:
        registry = LocationRegistry(session)
        print("🌱 Seeding photographers...")
        for data in SAMPLE_PHOTOGRAPHERS:
            photographer_id = uuid.uuid5(uuid.NAMESPACE_DNS, f"{data['display_name']}.instantphoto.dev")
            availability = await registry.upsert_location(photographer_id, LocationUpdate(**data))
            print(f"  - {availability.display_name} ({photographer_id})")
        print(f"✅ Seeded {len(SAMPLE_PHOTOGRAPHERS)} photographers")


if __name__ == "__main__":
    asyncio.run(seed_photographers())
