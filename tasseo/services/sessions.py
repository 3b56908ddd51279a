"""
Tasseo Engine - Session / Retopic Continuation

A session group is every AnalysisRecord derived from one uploaded photo. A
retopic request reads another facet of the same photo by reusing the cached
first-stage result of a completed record, so the vision call is paid once.

All checks here run before the ledger is touched.
"""

from __future__ import annotations

import logging
from typing import Iterable
from uuid import UUID

from pydantic import ValidationError

from tasseo.core.errors import FacetAlreadyCoveredError, SessionExpiredError
from tasseo.models import (
    SINGLE_FACETS,
    AnalysisStatus,
    Continuation,
    Facet,
    IntermediateResult,
)
from tasseo.repositories.analyses import AnalysisRepository

logger = logging.getLogger(__name__)


def remaining_facets(covered: Iterable[str]) -> list[str]:
    """Single facets not yet covered, in keyboard order."""
    done = set(covered)
    return [facet.value for facet in SINGLE_FACETS if facet.value not in done]


class SessionService:
    def __init__(self, repository: AnalysisRepository) -> None:
        self._repository = repository

    async def covered_facets(self, session_group_id: UUID) -> set[str]:
        """Facets of completed records in the group, never including `all`."""
        facets = await self._repository.completed_facets(session_group_id)
        facets.discard(Facet.ALL.value)
        return facets

    async def load_continuation(self, record_id: UUID, identity: int, facet: str) -> Continuation:
        """
        Validate a retopic request against the record it continues.

        Raises:
            SessionExpiredError: record missing, owned by someone else, not
                completed, or without a cached intermediate result
            FacetAlreadyCoveredError: facet is `all` or already read in the group
        """
        if facet == Facet.ALL.value:
            raise FacetAlreadyCoveredError(facet)

        record = await self._repository.get(record_id)
        if record is None:
            raise SessionExpiredError("not_found")
        if record.telegram_user_id != identity:
            logger.warning(
                "retopic_owner_mismatch record=%s owner=%s requester=%s",
                record_id,
                record.telegram_user_id,
                identity,
            )
            raise SessionExpiredError("wrong_owner")
        if record.status is not AnalysisStatus.COMPLETED:
            raise SessionExpiredError("not_completed")
        if not record.vision_result:
            raise SessionExpiredError("no_intermediate")
        try:
            intermediate = IntermediateResult.model_validate(record.vision_result)
        except ValidationError:
            raise SessionExpiredError("no_intermediate") from None

        group_id = record.session_group_id or record.id
        covered = await self.covered_facets(group_id)
        if record.facet != Facet.ALL.value:
            covered.add(record.facet)
        if facet in covered:
            raise FacetAlreadyCoveredError(facet, group_id)

        return Continuation(
            source=record,
            intermediate=intermediate,
            session_group_id=group_id,
            covered=frozenset(covered),
        )
