from pydantic import BaseModel, Field, model_validator
from typing import Optional
from enum import Enum


class ItemCondition(str, Enum):
    NEW = "NEW"
    LIKE_NEW = "LIKE NEW"
    GOOD = "GOOD"
    FAIR = "FAIR"
    UNKNOWN = "N/A"


class PriceRange(BaseModel):
    """Suggested resale price range."""
    low: float = Field(..., ge=0)
    high: float = Field(..., ge=0)
    currency: str = Field(default="USD", max_length=3)

    @model_validator(mode="after")
    def _order_bounds(self) -> "PriceRange":
        if self.high < self.low:
            self.low, self.high = self.high, self.low
        return self


class AnalysisDraft(BaseModel):
    """Advisory listing draft produced by the vision provider.

    Nothing in the pipeline depends on these values; they only pre-fill a listing.
    """
    title: str = Field(..., max_length=200)
    description: str = Field(default="", max_length=5000)
    category: str = Field(default="N/A", max_length=200)
    condition: ItemCondition = ItemCondition.UNKNOWN
    price_range: Optional[PriceRange] = None

    # Read from tags/labels when visible
    brand: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
