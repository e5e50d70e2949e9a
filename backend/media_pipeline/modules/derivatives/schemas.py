"""Pydantic schemas for derivative sets and delete reports."""

from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from media_pipeline.modules.derivatives.models import (
    AssetDerivativeSet,
    DeleteReport,
    DeleteStatus,
    Encoding,
    Tier,
)


class CamelModel(BaseModel):
    """Base schema serialized with camelCase field names."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class ErrorResponse(CamelModel):
    code: str
    message: str


class DerivativeDescriptorResponse(CamelModel):
    """One stored derivative."""
    tier: Tier
    encoding: Encoding
    url: str
    key: str
    width: Optional[int] = None
    height: Optional[int] = None
    size: Optional[int] = None


class AssetDerivativeSetResponse(CamelModel):
    """Every derivative of an asset."""
    base_id: str
    derivatives: list[DerivativeDescriptorResponse]
    urls: dict[str, dict[str, str]] = Field(
        default_factory=dict, description="URLs grouped by tier, then encoding"
    )

    @classmethod
    def from_set(cls, derivative_set: AssetDerivativeSet) -> "AssetDerivativeSetResponse":
        return cls(
            base_id=derivative_set.base_id,
            derivatives=[
                DerivativeDescriptorResponse.model_validate(d) for d in derivative_set.derivatives
            ],
            urls=derivative_set.urls(),
        )


class KeyDeleteOutcomeResponse(CamelModel):
    key: str
    status: DeleteStatus
    error: Optional[str] = None


class DeleteReportResponse(CamelModel):
    """Outcome of deleting an asset's derivative set."""
    base_id: str
    deleted: int
    not_found: int
    errors: int
    outcomes: list[KeyDeleteOutcomeResponse]

    @classmethod
    def from_report(cls, report: DeleteReport) -> "DeleteReportResponse":
        return cls(
            base_id=report.base_id,
            deleted=len(report.deleted),
            not_found=len(report.not_found),
            errors=len(report.errors),
            outcomes=[KeyDeleteOutcomeResponse.model_validate(o) for o in report.outcomes],
        )
