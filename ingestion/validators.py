"""
Record validation against the per-kind schemas in schemas.records.

A rejection is never a bare boolean: it carries one ValidationIssue per
failing field (field + constraint + message), which is what ends up in the
Skipped Entity details.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError as PydanticValidationError

from models.base import EntityKind
from schemas.records import (
    RecordBase,
    ClubRecord,
    PlayerRecord,
    PlayerYearStatsRecord,
    TournamentRecord,
    PlayerTournamentRecord,
    GameRecord,
)

RECORD_SCHEMAS: Dict[EntityKind, Type[RecordBase]] = {
    EntityKind.CLUB: ClubRecord,
    EntityKind.PLAYER: PlayerRecord,
    EntityKind.PLAYER_YEAR_STATS: PlayerYearStatsRecord,
    EntityKind.TOURNAMENT: TournamentRecord,
    EntityKind.PLAYER_TOURNAMENT: PlayerTournamentRecord,
    EntityKind.GAME: GameRecord,
}


@dataclass
class ValidationIssue:
    field: str
    constraint: str
    message: str


@dataclass
class ValidationOutcome:
    kind: EntityKind
    record: Optional[RecordBase] = None
    issues: List[ValidationIssue] = field(default_factory=list)
    external_id: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.record is not None

    def summary(self) -> str:
        return "; ".join(f"{i.field}: {i.message}" for i in self.issues)

    def issues_as_dicts(self) -> List[Dict[str, str]]:
        return [asdict(i) for i in self.issues]


def _issues_from(error: PydanticValidationError) -> List[ValidationIssue]:
    issues = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
        issues.append(ValidationIssue(
            field=loc,
            constraint=err.get("type", "invalid"),
            message=err.get("msg", "invalid value"),
        ))
    return issues


def validate_record(kind: EntityKind, candidate: Dict[str, Any]) -> ValidationOutcome:
    """Accept or reject one candidate record."""
    schema: Type[BaseModel] = RECORD_SCHEMAS[kind]
    external_id = candidate.get("external_id")
    try:
        record = schema.model_validate(candidate)
    except PydanticValidationError as e:
        return ValidationOutcome(kind=kind, issues=_issues_from(e), external_id=external_id)
    return ValidationOutcome(kind=kind, record=record, external_id=record.external_id)


def validate_batch(kind: EntityKind, candidates: List[Dict[str, Any]]) -> List[ValidationOutcome]:
    return [validate_record(kind, candidate) for candidate in candidates]
