"""
scope_resolver.py — Entity id → jurisdiction predicate.

The administrative hierarchy (owned by the hierarchy service) has three
levels, each in its own collection:

  cities  { _id, name, code }
  towns   { _id, name, code, city }
  ucs     { _id, name, code, ucNumber, town, city }    (union councils)

A profile heatmap for an entity covers the entity and everything beneath it.
All kind-specific branching happens here; the engine only ever sees the
resulting JurisdictionPredicate.

Entities are looked up by code ("UC-12", "MCD_SOUTH", case-insensitive) or by
their ObjectId string. A blank or unknown id is EntityNotFound; there is no
fallback scope.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from bson import ObjectId

from civiclens.core.errors import EntityNotFound
from civiclens.services.filter_index import JurisdictionPredicate

logger = logging.getLogger(__name__)

# (kind, collection, depth), searched in this order
_LEVELS = (
    ("city", "cities", 0),
    ("town", "towns", 1),
    ("uc", "ucs", 2),
)


@dataclass(frozen=True)
class ResolvedScope:
    entity_id: str   # canonical ObjectId string (used in the cache fingerprint)
    code: Optional[str]
    name: Optional[str]
    kind: str        # "city" | "town" | "uc"
    depth: int       # 0 city, 1 town, 2 uc
    predicate: JurisdictionPredicate


class ScopeResolver:
    def __init__(self, db):
        self._db = db

    async def resolve(self, entity_id: Optional[str]) -> ResolvedScope:
        if entity_id is None or not str(entity_id).strip():
            raise EntityNotFound("Entity ID is required")
        raw = str(entity_id).strip()

        lookup = _lookup_filter(raw)
        for kind, collection, depth in _LEVELS:
            doc = await self._db[collection].find_one(lookup)
            if doc is not None:
                predicate = await self._predicate_for(kind, doc["_id"])
                logger.debug("Resolved %s to %s %s", raw, kind, doc["_id"])
                return ResolvedScope(
                    entity_id=str(doc["_id"]),
                    code=doc.get("code"),
                    name=doc.get("name"),
                    kind=kind,
                    depth=depth,
                    predicate=predicate,
                )

        raise EntityNotFound(f"Entity '{raw}' not found")

    async def _predicate_for(self, kind: str, oid) -> JurisdictionPredicate:
        if kind == "city":
            towns = await self._member_ids("towns", {"city": oid})
            ucs = await self._member_ids("ucs", {"city": oid})
            return JurisdictionPredicate((
                ("cityId", frozenset([oid])),
                ("townId", towns),
                ("ucId", ucs),
            ))
        if kind == "town":
            ucs = await self._member_ids("ucs", {"town": oid})
            return JurisdictionPredicate((
                ("townId", frozenset([oid])),
                ("ucId", ucs),
            ))
        return JurisdictionPredicate((("ucId", frozenset([oid])),))

    async def _member_ids(self, collection: str, query: dict) -> frozenset:
        cursor = self._db[collection].find(query, {"_id": 1})
        return frozenset([doc["_id"] async for doc in cursor])


def _lookup_filter(raw: str) -> dict:
    by_code = {"code": raw.upper()}
    if ObjectId.is_valid(raw):
        return {"$or": [{"_id": ObjectId(raw)}, by_code]}
    return by_code
