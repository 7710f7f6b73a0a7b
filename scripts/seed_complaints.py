#!/usr/bin/env python3
"""
seed_complaints.py — Populate MongoDB with a sample hierarchy and complaints
for local heatmap development.

Usage:
    python scripts/seed_complaints.py                # replace existing seed data
    python scripts/seed_complaints.py --count 2000   # more complaints
    python scripts/seed_complaints.py --append       # add without clearing first

Reads MONGO_URI / MONGO_DB_NAME the same way the API does (env vars or .env).

What this script creates
────────────────────────
  cities      ← Karachi
  towns       ← 3 towns
  ucs         ← 2 union councils per town
  complaints  ← random complaints around each UC over the last 90 days
  indexes     ← the indexes the heatmap filter relies on
"""

import argparse
import asyncio
import random
from datetime import datetime, timedelta, timezone

import certifi
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from civiclens.core.config import settings
from civiclens.core.database import _redact_uri
from civiclens.models.complaint import KNOWN_CATEGORIES

SEED_SOURCE = "seed_complaints"

CITY = {"name": "Karachi", "code": "KHI"}

# town code → (name, [(uc code, uc number, centre lat, centre lng), ...])
TOWNS = {
    "SADDAR": ("Saddar", [("UC-12", 12, 24.8607, 67.0011), ("UC-13", 13, 24.8550, 67.0280)]),
    "GULSHAN": ("Gulshan-e-Iqbal", [("UC-7", 7, 24.9210, 67.0930), ("UC-8", 8, 24.9300, 67.1150)]),
    "KORANGI": ("Korangi", [("UC-21", 21, 24.8290, 67.1260), ("UC-22", 22, 24.8400, 67.1500)]),
}

STATUSES = ["submitted", "acknowledged", "in_progress", "resolved"]


async def upsert_by_code(collection, doc: dict):
    """Insert or update a hierarchy document keyed on its code; returns its _id."""
    await collection.update_one({"code": doc["code"]}, {"$set": doc}, upsert=True)
    return (await collection.find_one({"code": doc["code"]}, {"_id": 1}))["_id"]


def make_complaint(rng: random.Random, now: datetime, lat: float, lng: float, ids: dict) -> dict:
    severity = round(rng.uniform(1, 10), 1)
    doc = {
        "description": "Seeded complaint",
        "source": SEED_SOURCE,
        "location": {
            "type": "Point",
            "coordinates": [lng + rng.gauss(0, 0.006), lat + rng.gauss(0, 0.006)],
        },
        "category": {"primary": rng.choice(KNOWN_CATEGORIES)},
        "status": {"current": rng.choice(STATUSES)},
        "createdAt": now - timedelta(days=rng.uniform(0, 90)),
        **ids,
    }
    # About one in ten documents carries no severity block
    if rng.random() > 0.1:
        doc["severity"] = {"score": severity}
    return doc


async def seed(count: int, append: bool, seed_value: int) -> None:
    print(f"Connecting to MongoDB at {_redact_uri(settings.mongo_uri)}...")
    client = AsyncIOMotorClient(settings.mongo_uri, tlsCAFile=certifi.where())
    db = client[settings.mongo_db_name]
    rng = random.Random(seed_value)
    now = datetime.now(timezone.utc)

    try:
        await client.admin.command("ping")
        print("Connected.")

        # ─── Clean up previous seed data ──────────────────────────────────────
        if not append:
            deleted = await db.complaints.delete_many({"source": SEED_SOURCE})
            print(f"Removed {deleted.deleted_count} existing seed complaints.")

        # ─── Hierarchy ────────────────────────────────────────────────────────
        city_id = await upsert_by_code(db.cities, dict(CITY))
        ucs = []
        for town_code, (town_name, town_ucs) in TOWNS.items():
            town_id = await upsert_by_code(
                db.towns, {"name": town_name, "code": town_code, "city": city_id},
            )
            for uc_code, number, lat, lng in town_ucs:
                uc_id = await upsert_by_code(db.ucs, {
                    "name": f"UC {number}", "code": uc_code, "ucNumber": number,
                    "town": town_id, "city": city_id,
                })
                ucs.append((lat, lng, {"cityId": city_id, "townId": town_id, "ucId": uc_id}))
        print(f"Hierarchy ready: 1 city, {len(TOWNS)} towns, {len(ucs)} UCs.")

        # ─── Complaints ───────────────────────────────────────────────────────
        docs = [make_complaint(rng, now, *rng.choice(ucs)) for _ in range(count)]
        result = await db.complaints.insert_many(docs)
        print(f"Inserted {len(result.inserted_ids)} complaints.")

        # ─── Ensure indexes exist ─────────────────────────────────────────────
        await db.complaints.create_index([("createdAt", DESCENDING)])
        await db.complaints.create_index([("category.primary", ASCENDING), ("createdAt", DESCENDING)])
        await db.complaints.create_index([("location", "2dsphere")])
        for field in ("cityId", "townId", "ucId"):
            await db.complaints.create_index([(field, ASCENDING), ("createdAt", DESCENDING)])
        for collection in (db.cities, db.towns, db.ucs):
            await collection.create_index([("code", ASCENDING)], unique=True)
        await db.towns.create_index([("city", ASCENDING)])
        await db.ucs.create_index([("town", ASCENDING)])
        await db.ucs.create_index([("city", ASCENDING)])
        print("Indexes ensured.")

        print("\nSeed complete! Complaints per category:")
        pipeline = [{"$group": {"_id": "$category.primary", "count": {"$sum": 1}}}]
        async for doc in db.complaints.aggregate(pipeline):
            print(f"  {doc['_id']}: {doc['count']} complaints")

    finally:
        client.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed complaints for the heatmap API.")
    parser.add_argument("--count", type=int, default=500, help="complaints to insert (default 500)")
    parser.add_argument("--append", action="store_true", help="keep existing seed complaints")
    parser.add_argument("--seed", type=int, default=42, help="random seed")
    args = parser.parse_args()
    asyncio.run(seed(args.count, args.append, args.seed))


if __name__ == "__main__":
    main()
