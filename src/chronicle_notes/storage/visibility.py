"""Shared/private visibility filter for campaign notes.

A requester sees their own notes plus every note flagged as shared, limited
to one campaign. The listing can be narrowed to the notes attached to one
entity page, or to campaign-wide notes that are attached to no entity.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.sql.elements import ColumnElement

from chronicle_notes.exceptions import ErrorCode, ValidationError
from chronicle_notes.models.db_models import DBNote
from chronicle_notes.models.schema import Note


class ScopeKind(str, Enum):
    """Which slice of a campaign's visible notes to return."""

    ALL = "all"  # Every visible note in the campaign
    CAMPAIGN = "campaign"  # Only notes not attached to an entity
    ENTITY = "entity"  # Only notes attached to one entity


@dataclass(frozen=True)
class VisibilityScope:
    """Read filter for one requester within one campaign.

    Attributes:
        requester_id: Identity asking to see notes.
        campaign_id: Campaign the notes must belong to.
        kind: Slice of the campaign to return.
        entity_id: Entity page, required when kind is ENTITY.
    """

    requester_id: str
    campaign_id: str
    kind: ScopeKind = ScopeKind.ALL
    entity_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.campaign_id or not self.campaign_id.strip():
            raise ValidationError(
                "campaign id is required",
                field="campaign_id",
                code=ErrorCode.INVALID_SCOPE,
            )
        if not self.requester_id or not self.requester_id.strip():
            raise ValidationError(
                "requester id is required",
                field="requester_id",
                code=ErrorCode.INVALID_SCOPE,
            )
        if self.kind == ScopeKind.ENTITY and not self.entity_id:
            raise ValidationError(
                "entity_id is required for entity scope",
                field="entity_id",
                code=ErrorCode.INVALID_SCOPE,
            )
        if self.kind != ScopeKind.ENTITY and self.entity_id:
            raise ValidationError(
                "entity_id is only valid for entity scope",
                field="entity_id",
                value=self.entity_id,
                code=ErrorCode.INVALID_SCOPE,
            )

    @classmethod
    def for_request(
        cls,
        requester_id: str,
        campaign_id: str,
        entity_id: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> "VisibilityScope":
        """Build a scope from loosely typed caller input.

        An explicit ``scope`` string wins. Without one, a given entity_id
        selects that entity's notes and no entity_id selects campaign-wide
        notes.
        """
        if scope:
            try:
                kind = ScopeKind(scope.lower())
            except ValueError:
                raise ValidationError(
                    f"unknown scope '{scope}'",
                    field="scope",
                    value=scope,
                    code=ErrorCode.INVALID_SCOPE,
                )
        else:
            kind = ScopeKind.ENTITY if entity_id else ScopeKind.CAMPAIGN
        if kind != ScopeKind.ENTITY:
            entity_id = None
        return cls(
            requester_id=requester_id,
            campaign_id=campaign_id,
            kind=kind,
            entity_id=entity_id,
        )

    def clause(self) -> ColumnElement:
        """SQL predicate selecting the notes this scope may see."""
        conditions = [
            DBNote.campaign_id == self.campaign_id,
            or_(DBNote.user_id == self.requester_id, DBNote.is_shared.is_(True)),
        ]
        if self.kind == ScopeKind.ENTITY:
            conditions.append(DBNote.entity_id == self.entity_id)
        elif self.kind == ScopeKind.CAMPAIGN:
            conditions.append(DBNote.entity_id.is_(None))
        return and_(*conditions)

    def permits(self, note: Note) -> bool:
        """In-memory twin of clause() for a note that is already loaded."""
        if note.campaign_id != self.campaign_id:
            return False
        if note.user_id != self.requester_id and not note.is_shared:
            return False
        if self.kind == ScopeKind.ENTITY:
            return note.entity_id == self.entity_id
        if self.kind == ScopeKind.CAMPAIGN:
            return note.entity_id is None
        return True
