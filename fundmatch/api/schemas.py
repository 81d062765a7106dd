from datetime import date, datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PreferencePayload(CamelModel):
    organization_id: int = Field(alias="organizationId")
    categories: List[str] = Field(default_factory=list)
    min_amount: Optional[int] = Field(None, alias="minAmount", ge=0)
    max_amount: Optional[int] = Field(None, alias="maxAmount", ge=0)
    regions: List[str] = Field(default_factory=list)
    sub_regions: List[str] = Field(default_factory=list, alias="subRegions")
    exclude_keywords: List[str] = Field(default_factory=list, alias="excludeKeywords")


class PreferenceOut(CamelModel):
    id: int
    organization_id: int = Field(serialization_alias="organizationId")
    categories: List[str]
    min_amount: Optional[int] = Field(None, serialization_alias="minAmount")
    max_amount: Optional[int] = Field(None, serialization_alias="maxAmount")
    regions: List[str]
    sub_regions: List[str] = Field(serialization_alias="subRegions")
    exclude_keywords: List[str] = Field(serialization_alias="excludeKeywords")
    configured: bool
    updated_at: Optional[datetime] = Field(None, serialization_alias="updatedAt")


class OpportunitySummary(CamelModel):
    id: int
    name: str
    organization: str
    category: str
    region: Optional[str] = None
    deadline: Optional[date] = None
    is_permanent: bool = Field(serialization_alias="isPermanent")
    amount_min: Optional[int] = Field(None, serialization_alias="amountMin")
    amount_max: Optional[int] = Field(None, serialization_alias="amountMax")


class ResultOut(CamelModel):
    id: int
    organization_id: int = Field(serialization_alias="organizationId")
    opportunity_id: int = Field(serialization_alias="opportunityId")
    total_score: int = Field(serialization_alias="totalScore")
    similarity_score: int = Field(serialization_alias="similarityScore")
    category_score: int = Field(serialization_alias="categoryScore")
    eligibility_score: int = Field(serialization_alias="eligibilityScore")
    timeliness_score: int = Field(serialization_alias="timelinessScore")
    amount_score: int = Field(serialization_alias="amountScore")
    confidence: str
    match_reasons: List[str] = Field(serialization_alias="matchReasons")
    degraded: bool
    is_relevant: Optional[bool] = Field(None, serialization_alias="isRelevant")
    feedback_note: Optional[str] = Field(None, serialization_alias="feedbackNote")
    refreshed_at: Optional[datetime] = Field(None, serialization_alias="refreshedAt")
    opportunity: Optional[OpportunitySummary] = None


class ResultList(CamelModel):
    items: List[ResultOut]
    total: int
    page: int
    page_size: int = Field(serialization_alias="pageSize")
    total_pages: int = Field(serialization_alias="totalPages")


class FeedbackPayload(CamelModel):
    is_relevant: bool = Field(alias="isRelevant")
    feedback_note: Optional[str] = Field(None, alias="feedbackNote", max_length=2000)


class RunPayload(CamelModel):
    organization_id: int = Field(alias="organizationId")


class RefreshPayload(CamelModel):
    direct: bool = False


class WorkerBatchPayload(CamelModel):
    batch_size: int = Field(10, alias="batchSize", ge=1, le=100)
    max_organizations: int = Field(500, alias="maxOrganizations", ge=1, le=5000)


class EmbeddingBatchPayload(CamelModel):
    batch_size: int = Field(50, alias="batchSize", ge=1, le=500)


class Envelope(BaseModel):
    success: bool = True
    data: Dict[str, Any]
