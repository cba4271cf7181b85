"""Portability request model.

A request records a data subject's demand to export everything held about
them. Its state only changes through the lifecycle service.
"""

from __future__ import annotations

from sqlalchemy import Enum, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from portability.db.models.base import (
    Base,
    OptionalTimestampTZ,
    RequestState,
    TimestampTZ,
    UUIDPrimaryKey,
)


class PortabilityRequest(Base):
    """Data portability request.

    The owner is a polymorphic reference (owner_type + owner_id) to any
    entity of the host application. requested_by is empty when the owner
    initiated the request themselves.
    """

    __tablename__ = "portability_requests"

    request_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    owner_type: Mapped[str] = mapped_column(String(100), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)
    requested_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    state: Mapped[RequestState] = mapped_column(
        Enum(
            RequestState,
            name="portability_request_state",
            create_constraint=True,
            values_callable=lambda states: [s.value for s in states],
        ),
        nullable=False,
        default=RequestState.WAITING_FOR_APPROVAL,
    )

    # Object key of the export archive; set once, cleared after expiry
    attachment_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Set together with the DONE state
    expire_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        Index(
            "ix_portability_requests_owner_active",
            "owner_type",
            "owner_id",
            "requested_by",
            "state",
        ),
        Index("ix_portability_requests_expire_at", "expire_at"),
    )

    def __repr__(self) -> str:
        state = self.state.value if self.state else None
        return (
            f"<PortabilityRequest {self.request_id} "
            f"owner={self.owner_type}:{self.owner_id} state={state}>"
        )
