"""
test_heatmap_service.py — Validation, scope handling, caching and
invalidation through HeatmapService.
"""

import asyncio
from datetime import timedelta

import pytest

from civiclens.core.errors import EntityNotFound, InvalidParameter, StoreUnavailable, UpstreamTimeout
from civiclens.models.complaint import ComplaintReport
from civiclens.models.heatmap import ComplaintPersistedEvent
from civiclens.services.heatmap_service import HeatmapService, normalize_category
from tests.conftest import CITY_ID, SADDAR_ID, UC12_ID, FakeDB, complaint


class TestValidation:

    @pytest.mark.parametrize("precision", ["0", "10", "abc", "5.5", 0, 10])
    async def test_bad_precision(self, service, precision):
        with pytest.raises(InvalidParameter, match="Precision"):
            await service.handle_global(precision=precision)

    @pytest.mark.parametrize("days", ["0", "-7", "week", "3651", 0])
    async def test_bad_days(self, service, days):
        with pytest.raises(InvalidParameter, match="Days"):
            await service.handle_global(days=days)

    async def test_precision_checked_before_days(self, service):
        with pytest.raises(InvalidParameter, match="Precision"):
            await service.handle_global(days="0", precision="0")

    async def test_validation_happens_before_store_access(self, service, fake_db):
        with pytest.raises(InvalidParameter):
            await service.handle_profile("UC-12", precision="12")
        assert fake_db["ucs"].docs  # seeded
        assert fake_db["complaints"].find_calls == 0

    @pytest.mark.parametrize("category", ["Roads; drop", "a" * 51, "<script>"])
    async def test_malformed_category(self, service, category):
        with pytest.raises(InvalidParameter):
            await service.handle_global(category=category)

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(None, None), ("", None), ("all", None), ("ALL", None), ("Roads", "roads"), (" water ", "water")],
    )
    def test_normalize_category(self, raw, expected):
        assert normalize_category(raw) == expected


class TestGlobal:

    async def test_defaults(self, service):
        response = await service.handle_global()
        assert response.scope == "global"
        assert response.window_days == 30
        assert response.precision == 5
        assert response.category == "all"
        assert response.total_complaints == 6
        assert response.count == len(response.bins) == 4
        assert response.entity_id is None

    async def test_category_case_insensitive(self, service):
        lower = await service.handle_global(category="roads")
        upper = await service.handle_global(category="ROADS")
        assert lower.total_complaints == upper.total_complaints == 3
        assert lower.category == "roads"

    async def test_unknown_category_is_empty_not_error(self, service):
        response = await service.handle_global(category="Streetlights")
        assert response.bins == []
        assert response.total_complaints == 0

    async def test_all_equals_no_filter(self, service):
        assert (await service.handle_global(category="all")).bins == (await service.handle_global()).bins

    async def test_longer_window(self, service):
        assert (await service.handle_global(days="60")).total_complaints == 7

    async def test_empty_store_gives_empty_bins(self, cache, now):
        empty = HeatmapService.from_database(FakeDB(), cache, clock=lambda: now)
        response = await empty.handle_global(days="7", precision="5")
        assert response.bins == []
        assert response.count == response.total_complaints == 0


class TestProfile:

    async def test_uc_profile_counts_only_its_complaints(self, service):
        response = await service.handle_profile("UC-12")
        assert response.scope == "profile"
        assert response.entity_id == "UC-12"
        assert response.entity_kind == "uc"
        assert response.total_complaints == 3

    async def test_town_includes_uc_and_town_level_reports(self, service):
        assert (await service.handle_profile("SADDAR")).total_complaints == 4

    async def test_city_matches_global(self, service):
        city = await service.handle_profile(str(CITY_ID))
        assert city.bins == (await service.handle_global()).bins
        assert city.entity_kind == "city"

    async def test_profile_is_subset_of_global(self, service):
        global_bins = {b.cell_id: b.count for b in (await service.handle_global()).bins}
        for entity in ("UC-12", "UC-7", "SADDAR", "GULSHAN"):
            for b in (await service.handle_profile(entity)).bins:
                assert b.count <= global_bins[b.cell_id]

    async def test_code_and_object_id_share_cache_entry(self, service):
        await service.handle_profile("UC-12")
        await service.handle_profile(str(UC12_ID))
        assert service.cache.stats()["entries"] == 1

    @pytest.mark.parametrize("entity_id", [None, "", "  "])
    async def test_missing_entity(self, service, entity_id):
        with pytest.raises(EntityNotFound):
            await service.handle_profile(entity_id)

    async def test_unknown_entity(self, service):
        with pytest.raises(EntityNotFound):
            await service.handle_profile("UC-404")

    async def test_store_timeout(self, service, fake_db):
        from pymongo.errors import NetworkTimeout

        fake_db["complaints"].error = NetworkTimeout("timed out")
        with pytest.raises(UpstreamTimeout):
            await service.handle_profile("UC-12")

    async def test_hierarchy_lookup_failure(self, service, fake_db):
        from unittest.mock import AsyncMock

        from pymongo.errors import AutoReconnect

        fake_db["cities"].find_one = AsyncMock(side_effect=AutoReconnect("connection reset"))
        with pytest.raises(StoreUnavailable):
            await service.handle_profile("UC-12")


class TestCaching:

    async def test_repeat_request_served_from_cache(self, service, fake_db):
        await service.handle_global()
        await service.handle_global()
        assert fake_db["complaints"].find_calls == 1

    async def test_concurrent_requests_single_pass(self, service, fake_db):
        fake_db["complaints"].delay = 0.01
        responses = await asyncio.gather(*(service.handle_global() for _ in range(5)))
        assert fake_db["complaints"].find_calls == 1
        assert len({r.total_complaints for r in responses}) == 1

    async def test_failed_pass_is_not_cached(self, service, fake_db):
        fake_db["complaints"].error = RuntimeError("boom")
        with pytest.raises(Exception):
            await service.handle_global()
        fake_db["complaints"].error = None
        assert (await service.handle_global()).total_complaints == 6


class TestInvalidation:

    async def test_new_complaint_visible_after_notify(self, service, fake_db, now):
        assert (await service.handle_global()).total_complaints == 6

        new = complaint(now, 0, 24.8607, 67.0011, "Roads", 9.0, city=CITY_ID, town=SADDAR_ID, uc=UC12_ID)
        await fake_db["complaints"].insert_one(new)
        assert (await service.handle_global()).total_complaints == 6  # still cached

        evicted = service.notify_complaint_persisted(new)
        assert evicted == 1
        assert (await service.handle_global()).total_complaints == 7

    async def test_only_matching_category_evicted(self, service, now):
        await service.handle_global(category="roads")
        await service.handle_global(category="water")
        await service.handle_global()

        evicted = service.notify_complaint_persisted(
            ComplaintPersistedEvent(category="Water", created_at=now)
        )
        assert evicted == 2
        assert service.cache.stats()["entries"] == 1

    async def test_old_complaint_only_evicts_long_windows(self, service, now):
        await service.handle_global(days="30")
        await service.handle_global(days="90")

        evicted = service.notify_complaint_persisted(
            {"category": {"primary": "Roads"}, "createdAt": now - timedelta(days=45)}
        )
        assert evicted == 1

    async def test_profile_entries_evicted_too(self, service, now):
        await service.handle_profile("UC-7")
        report = ComplaintReport(None, 24.86, 67.0, "Roads", 5.0, now, uc_id=UC12_ID)
        assert service.notify_complaint_persisted(report) == 1

    async def test_naive_timestamp_treated_as_utc(self, service, now):
        await service.handle_global()
        naive = (now - timedelta(days=1)).replace(tzinfo=None)
        assert service.notify_complaint_persisted({"category": "Roads", "created_at": naive}) == 1

    async def test_bumps_data_version(self, service):
        before = service.cache.data_version
        service.notify_complaint_persisted(ComplaintPersistedEvent(category="Roads"))
        assert service.cache.data_version == before + 1

    async def test_unsupported_payload(self, service):
        with pytest.raises(TypeError):
            service.notify_complaint_persisted("Roads")

    async def test_iso_string_created_at(self, service, now):
        await service.handle_global()
        assert service.notify_complaint_persisted(
            {"category": "Roads", "createdAt": "2001-01-01T00:00:00Z"}
        ) == 0
        recent = (now - timedelta(days=1)).isoformat()
        assert service.notify_complaint_persisted({"category": "Roads", "createdAt": recent}) == 1

    @pytest.mark.parametrize("created_at", ["yesterday", 1700000000])
    async def test_unparseable_created_at(self, service, created_at):
        with pytest.raises(InvalidParameter):
            service.notify_complaint_persisted({"category": "Roads", "createdAt": created_at})
