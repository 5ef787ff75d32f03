"""Product information step of the landed-cost wizard."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from landed_cost.auth.dependencies import require_auth
from landed_cost.auth.principal import AuthenticatedUser

router = APIRouter()


class ProductInfo(BaseModel):
    """Shipment details entered before the cost calculation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    item_number: str = Field(..., min_length=1)
    name_id: str = Field(..., min_length=1)
    hts_code: Literal["2204.21.50.40", "2204.10.00.75"]
    country_of_origin: str = Field(..., min_length=2)
    unit_cost: Decimal = Field(..., gt=0, le=Decimal("999999.9999"))
    number_of_wine_cases: int = Field(..., ge=1, le=1260)
    container_size: str = Field(..., min_length=1)
    incoterms: str = Field(..., min_length=1)
    origin_port: str = Field(..., min_length=1)
    destination_port: str = Field(..., min_length=1)
    use_index_rates: bool = False
    freight_cost: Decimal | None = Field(default=None, ge=0)


@router.post("/product-info")
async def submit_product_info(
    body: ProductInfo,
    user: AuthenticatedUser = Depends(require_auth),
) -> dict:
    """Validate the product step for the logged-in user."""
    return {
        "userId": user.subject,
        "productInfo": body.model_dump(mode="json", by_alias=True),
    }
