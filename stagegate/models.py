from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from stagegate.utils import new_id, utc_now


class Base(DeclarativeBase):
    pass


class Initiative(Base):
    __tablename__ = "initiatives"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    workstream_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    owner_account_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    current_status: Mapped[str] = mapped_column(String(50), default="draft")
    active_stage: Mapped[str] = mapped_column(String(2), default="l0")
    l4_date: Mapped[str | None] = mapped_column(String(50), nullable=True)
    stage_payload_json: Mapped[str] = mapped_column(Text, default="{}")
    stage_state_json: Mapped[str] = mapped_column(Text, default="{}")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    approvals: Mapped[list[InitiativeApproval]] = relationship(
        "InitiativeApproval", back_populates="initiative", cascade="all, delete-orphan"
    )
    events: Mapped[list[InitiativeEvent]] = relationship(
        "InitiativeEvent", back_populates="initiative", cascade="all, delete-orphan"
    )


class InitiativeApproval(Base):
    __tablename__ = "initiative_approvals"
    __table_args__ = (
        UniqueConstraint("initiative_id", "stage_key", "round_index", "role", name="uq_approval_round_role"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    initiative_id: Mapped[str] = mapped_column(String(64), ForeignKey("initiatives.id"), nullable=False, index=True)
    stage_key: Mapped[str] = mapped_column(String(2), nullable=False)
    round_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    role: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending | approved | returned | rejected
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_by_account_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    initiative: Mapped[Initiative] = relationship("Initiative", back_populates="approvals")


class InitiativeEvent(Base):
    __tablename__ = "initiative_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    initiative_id: Mapped[str] = mapped_column(String(64), ForeignKey("initiatives.id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    field: Mapped[str] = mapped_column(String(100), nullable=False)
    previous_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_value_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_account_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    initiative: Mapped[Initiative] = relationship("Initiative", back_populates="events")
