from datetime import datetime, timezone

from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, Date, DateTime, ForeignKey, Integer,
    String, Text, UniqueConstraint, Index, delete, event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from fundmatch.db.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String, nullable=True)
    name = Column(String, nullable=True)


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    company_type = Column(String, nullable=False, default="중소기업")
    company_size = Column(String, nullable=True)
    business_category = Column(String, nullable=True)
    main_business = Column(String, nullable=True)
    business_items = Column(JSONType, nullable=False, default=list)
    is_venture = Column(Boolean, nullable=False, default=False)
    is_innobiz = Column(Boolean, nullable=False, default=False)
    is_mainbiz = Column(Boolean, nullable=False, default=False)
    employee_count = Column(Integer, nullable=True)
    annual_revenue = Column(BigInteger, nullable=True)
    introduction = Column(Text, nullable=True)
    vision = Column(Text, nullable=True)
    mission = Column(Text, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    members = relationship("OrganizationMember", back_populates="organization", cascade="all, delete-orphan", passive_deletes=True)
    certifications = relationship("Certification", cascade="all, delete-orphan", passive_deletes=True)
    documents = relationship("OrganizationDocument", cascade="all, delete-orphan", passive_deletes=True)
    preferences = relationship("MatchingPreference", cascade="all, delete-orphan", passive_deletes=True)


class OrganizationMember(Base):
    __tablename__ = "organization_members"
    __table_args__ = (UniqueConstraint("organization_id", "user_id", name="ux_member_org_user"),)

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String, nullable=False, default="member")  # owner | admin | member | viewer

    organization = relationship("Organization", back_populates="members")


class Certification(Base):
    __tablename__ = "certifications"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    certification_type = Column(String, nullable=False)
    certification_name = Column(String, nullable=False)
    issuing_organization = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class OrganizationDocument(Base):
    __tablename__ = "organization_documents"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    document_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="uploaded")  # uploaded | analyzed | failed
    summary = Column(Text, nullable=True)
    key_insights = Column(JSONType, nullable=False, default=list)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Opportunity(Base):
    __tablename__ = "opportunities"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    organization = Column(String, nullable=False, default="")
    category = Column(String, nullable=False, default="")
    sub_category = Column(String, nullable=True)
    target = Column(Text, nullable=False, default="")
    eligibility = Column(Text, nullable=True)
    summary = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=True)
    region = Column(String, nullable=True)
    sub_region = Column(String, nullable=True)
    amount_min = Column(BigInteger, nullable=True)
    amount_max = Column(BigInteger, nullable=True)
    deadline = Column(Date, nullable=True)
    is_permanent = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default="active")
    needs_embedding = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class DocumentEmbedding(Base):
    __tablename__ = "document_embeddings"
    __table_args__ = (UniqueConstraint("source_type", "source_id", name="ux_embedding_source"),)

    id = Column(Integer, primary_key=True)
    source_type = Column(String, nullable=False)  # support_project | organization_document
    source_id = Column(Integer, nullable=False)
    content_hash = Column(String, nullable=False)
    vector = Column(JSONType, nullable=False)
    model = Column(String, nullable=False)
    metadata_ = Column("metadata", JSONType, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class MatchingPreference(Base):
    __tablename__ = "matching_preferences"
    __table_args__ = (UniqueConstraint("user_id", "organization_id", name="ux_pref_user_org"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    categories = Column(JSONType, nullable=False, default=list)
    min_amount = Column(BigInteger, nullable=True)
    max_amount = Column(BigInteger, nullable=True)
    regions = Column(JSONType, nullable=False, default=list)
    sub_regions = Column(JSONType, nullable=False, default=list)
    exclude_keywords = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class MatchingResult(Base):
    __tablename__ = "matching_results"
    __table_args__ = (
        UniqueConstraint("organization_id", "opportunity_id", name="ux_result_org_opportunity"),
        Index("ix_result_user_refreshed", "user_id", "refreshed_at"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    opportunity_id = Column(Integer, ForeignKey("opportunities.id", ondelete="CASCADE"), nullable=False, index=True)

    total_score = Column(Integer, nullable=False)
    similarity_score = Column(Integer, nullable=False)
    category_score = Column(Integer, nullable=False)
    eligibility_score = Column(Integer, nullable=False)
    timeliness_score = Column(Integer, nullable=False)
    amount_score = Column(Integer, nullable=False)
    confidence = Column(String, nullable=False)  # high | medium | low
    match_reasons = Column(JSONType, nullable=False, default=list)
    degraded = Column(Boolean, nullable=False, default=False)

    # user feedback, preserved across re-scoring
    is_relevant = Column(Boolean, nullable=True)
    feedback_note = Column(Text, nullable=True)
    feedback_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    refreshed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    opportunity = relationship("Opportunity")
    organization = relationship("Organization")


class NotificationSetting(Base):
    __tablename__ = "notification_settings"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    email_enabled = Column(Boolean, nullable=False, default=True)
    matching_result_enabled = Column(Boolean, nullable=False, default=True)
    discord_enabled = Column(Boolean, nullable=False, default=False)
    discord_webhook_url = Column(String, nullable=True)
    slack_enabled = Column(Boolean, nullable=False, default=False)
    slack_webhook_url = Column(String, nullable=True)

    user = relationship("User")


SOURCE_SUPPORT_PROJECT = "support_project"
SOURCE_ORGANIZATION_DOCUMENT = "organization_document"


@event.listens_for(Opportunity, "after_delete")
def _drop_opportunity_embeddings(mapper, connection, target):
    table = DocumentEmbedding.__table__
    connection.execute(
        delete(table)
        .where(table.c.source_type == SOURCE_SUPPORT_PROJECT)
        .where(table.c.source_id == target.id)
    )


@event.listens_for(OrganizationDocument, "after_delete")
def _drop_document_embeddings(mapper, connection, target):
    table = DocumentEmbedding.__table__
    connection.execute(
        delete(table)
        .where(table.c.source_type == SOURCE_ORGANIZATION_DOCUMENT)
        .where(table.c.source_id == target.id)
    )
