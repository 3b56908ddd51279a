"""
Tasseo Engine - Domain Models

Value types shared by the ledger, the validation gate, the session service
and the worker pipeline. Values parsed from model output (ValidationResult,
IntermediateResult) are pydantic models; values produced internally are
plain dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ENUMS
# =============================================================================


class AnalysisStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class CreditType(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    CASSANDRA = "cassandra"


class Persona(str, Enum):
    ARINA = "arina"
    CASSANDRA = "cassandra"


class Facet(str, Enum):
    LOVE = "love"
    CAREER = "career"
    MONEY = "money"
    HEALTH = "health"
    FAMILY = "family"
    SPIRITUAL = "spiritual"
    ALL = "all"


# Display and keyboard order
SINGLE_FACETS: tuple[Facet, ...] = (
    Facet.LOVE,
    Facet.CAREER,
    Facet.MONEY,
    Facet.HEALTH,
    Facet.FAMILY,
    Facet.SPIRITUAL,
)

SUPPORTED_LANGUAGES = ("ru", "en", "zh")
DEFAULT_LANGUAGE = "ru"


def normalize_language(value: Optional[str]) -> str:
    """Map a client language code (`en-US`, `ZH`, None) onto a supported one."""
    if not value:
        return DEFAULT_LANGUAGE
    code = value.strip().lower().replace("_", "-").split("-")[0]
    return code if code in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE


def credit_type_for_facet(facet: Facet | str) -> CreditType:
    """The "all facets" reading is billed as pro, every single facet as basic."""
    return CreditType.PRO if Facet(facet) is Facet.ALL else CreditType.BASIC


# =============================================================================
# MODEL OUTPUT
# =============================================================================


class ValidationResult(BaseModel):
    """Classifier verdict for a submitted image."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    category: str = "unknown"
    confidence: float = Field(default=0.0)
    description: str = ""

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return min(1.0, max(0.0, float(v)))

    def detail(self) -> str:
        """Error detail persisted on a rejected record."""
        return f"Validation failed: {self.category} (confidence: {self.confidence:.2f})"


class IntermediateResult(BaseModel):
    """
    First-stage (vision) output, cached on the record as JSON so a later
    facet can be interpreted without looking at the image again.
    """

    model_config = ConfigDict(extra="allow")

    description: str
    symbols: list[str] = Field(default_factory=list)
    model: Optional[str] = None
    tokens_used: int = 0


@dataclass(frozen=True)
class Interpretation:
    text: str
    tokens_used: int = 0
    model: Optional[str] = None


# =============================================================================
# LEDGER
# =============================================================================


@dataclass(frozen=True)
class LinkedAccount:
    """Identity resolved to a canonical multi-channel account."""

    account_id: str


@dataclass(frozen=True)
class UnlinkedAccount:
    """Identity billed on the legacy per-identity balance."""


AccountShape = Union[LinkedAccount, UnlinkedAccount]


@dataclass(frozen=True)
class GrantResult:
    """
    Outcome of a one-time bonus grant.

    success=True, already_granted=False: this call moved the balance.
    success=True, already_granted=True: a previous call already did.
    success=False: the store refused or failed; balance unknown.
    """

    success: bool
    already_granted: bool = False
    balance: Optional[int] = None
    error: Optional[str] = None


# =============================================================================
# RECORDS
# =============================================================================


@dataclass
class AnalysisRecord:
    """One reading attempt as persisted in `analysis_history`."""

    id: UUID
    telegram_user_id: int
    persona: str
    facet: str
    status: AnalysisStatus
    session_group_id: Optional[UUID] = None
    analysis_type: str = "photo"
    vision_result: Optional[dict[str, Any]] = None
    interpretation: Optional[str] = None
    error_message: Optional[str] = None
    model_used: Optional[str] = None
    tokens_used: Optional[int] = None
    processing_time_ms: Optional[int] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "AnalysisRecord":
        group = row.get("session_group_id")
        return cls(
            id=UUID(str(row["id"])),
            telegram_user_id=int(row["telegram_user_id"]),
            persona=row.get("persona") or Persona.ARINA.value,
            facet=row.get("topic") or Facet.ALL.value,
            status=AnalysisStatus(row.get("status") or AnalysisStatus.PROCESSING.value),
            session_group_id=UUID(str(group)) if group else None,
            analysis_type=row.get("analysis_type") or "photo",
            vision_result=row.get("vision_result"),
            interpretation=row.get("interpretation"),
            error_message=row.get("error_message"),
            model_used=row.get("model_used"),
            tokens_used=row.get("tokens_used"),
            processing_time_ms=row.get("processing_time_ms"),
            created_at=_parse_ts(row.get("created_at")),
            completed_at=_parse_ts(row.get("completed_at")),
        )

    @property
    def intermediate(self) -> Optional[IntermediateResult]:
        if not self.vision_result:
            return None
        return IntermediateResult.model_validate(self.vision_result)


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


# =============================================================================
# GATE / SESSION RESULTS
# =============================================================================


@dataclass(frozen=True)
class RejectionNotice:
    text: str
    personalized: bool


@dataclass(frozen=True)
class Continuation:
    """A validated retopic request, ready for the second stage."""

    source: AnalysisRecord
    intermediate: IntermediateResult
    session_group_id: UUID
    covered: frozenset[str] = field(default_factory=frozenset)
