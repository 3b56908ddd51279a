"""Tests for tasseo.services.sessions (retopic continuation checks)."""

from __future__ import annotations

from uuid import uuid4

import pytest

from tasseo.core.errors import FacetAlreadyCoveredError, SessionExpiredError
from tasseo.models import AnalysisStatus
from tasseo.services.sessions import remaining_facets
from tests.conftest import IDENTITY, seed_record


def test_remaining_facets_keeps_keyboard_order():
    assert remaining_facets({"money", "love"}) == ["career", "health", "family", "spiritual"]
    assert remaining_facets(set()) == ["love", "career", "money", "health", "family", "spiritual"]
    assert remaining_facets({"all"}) == ["love", "career", "money", "health", "family", "spiritual"]


class TestLoadContinuation:
    @pytest.mark.asyncio
    async def test_valid_request_reuses_group_and_intermediate(self, sessions, supabase):
        group = uuid4()
        record_id = seed_record(supabase, facet="love", group=group)

        continuation = await sessions.load_continuation(record_id, IDENTITY, "career")

        assert continuation.session_group_id == group
        assert continuation.intermediate.description == "a bird near the rim"
        assert "love" in continuation.covered
        assert supabase.rpc_calls == []

    @pytest.mark.asyncio
    async def test_record_without_group_starts_one_at_its_own_id(self, sessions, supabase):
        record_id = seed_record(supabase, facet="all", group=None)

        continuation = await sessions.load_continuation(record_id, IDENTITY, "love")

        assert continuation.session_group_id == record_id
        assert "all" not in continuation.covered

    @pytest.mark.asyncio
    async def test_missing_record(self, sessions):
        with pytest.raises(SessionExpiredError) as exc_info:
            await sessions.load_continuation(uuid4(), IDENTITY, "love")
        assert exc_info.value.reason == "not_found"

    @pytest.mark.asyncio
    async def test_other_owner(self, sessions, supabase):
        record_id = seed_record(supabase, identity=IDENTITY + 1)

        with pytest.raises(SessionExpiredError) as exc_info:
            await sessions.load_continuation(record_id, IDENTITY, "career")
        assert exc_info.value.reason == "wrong_owner"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [AnalysisStatus.PROCESSING, AnalysisStatus.FAILED, AnalysisStatus.REJECTED])
    async def test_record_not_completed(self, sessions, supabase, status):
        record_id = seed_record(supabase, status=status)

        with pytest.raises(SessionExpiredError) as exc_info:
            await sessions.load_continuation(record_id, IDENTITY, "career")
        assert exc_info.value.reason == "not_completed"

    @pytest.mark.asyncio
    async def test_record_without_intermediate(self, sessions, supabase):
        record_id = seed_record(supabase, vision_result={})

        with pytest.raises(SessionExpiredError) as exc_info:
            await sessions.load_continuation(record_id, IDENTITY, "career")
        assert exc_info.value.reason == "no_intermediate"

    @pytest.mark.asyncio
    async def test_all_is_never_a_continuation(self, sessions, supabase):
        record_id = seed_record(supabase)

        with pytest.raises(FacetAlreadyCoveredError):
            await sessions.load_continuation(record_id, IDENTITY, "all")

    @pytest.mark.asyncio
    async def test_facet_exclusivity_within_group(self, sessions, supabase):
        group = uuid4()
        record_id = seed_record(supabase, facet="love", group=group)
        seed_record(supabase, facet="career", group=group)

        with pytest.raises(FacetAlreadyCoveredError) as exc_info:
            await sessions.load_continuation(record_id, IDENTITY, "career")
        assert exc_info.value.facet == "career"
        assert exc_info.value.session_group_id == group

        with pytest.raises(FacetAlreadyCoveredError):
            await sessions.load_continuation(record_id, IDENTITY, "love")

    @pytest.mark.asyncio
    async def test_failed_reading_does_not_cover_its_facet(self, sessions, supabase):
        group = uuid4()
        record_id = seed_record(supabase, facet="love", group=group)
        seed_record(supabase, facet="money", group=group, status=AnalysisStatus.FAILED)

        continuation = await sessions.load_continuation(record_id, IDENTITY, "money")

        assert continuation.covered == frozenset({"love"})
