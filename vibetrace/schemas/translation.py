"""Pydantic schema for one element of the language model's translation reply."""

from pydantic import BaseModel, ConfigDict, Field


class TranslatedFinding(BaseModel):
    """
    One element of the JSON array returned by the model.

    business_impact is optional in the contract; the fallback fills it when absent.
    """

    model_config = ConfigDict(extra="ignore")

    plain_english: str = Field(..., description="Non-technical explanation with an analogy.")
    business_impact: str | None = Field(
        default=None,
        description="Impact on users and business, calibrated to severity.",
    )
    fix_prompt: str = Field(..., description="Copy-pasteable prompt for the user's AI coding tool.")
    verification_step: str = Field(..., description="Plain-language check after the fix.")
