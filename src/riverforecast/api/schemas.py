"""Pydantic schemas for upstream API responses."""

from typing import Optional

from pydantic import BaseModel, Field

from riverforecast.cache.models import RETURN_PERIOD_YEARS


class ReturnPeriodResponse(BaseModel):
    """One element of the return-period gateway response.

    Attributes:
        feature_id: Reach identifier as reported by the gateway
        return_period_N: Flow threshold (cms) for the N-year return period
    """

    feature_id: Optional[int] = None
    return_period_2: Optional[float] = Field(default=None, ge=0)
    return_period_5: Optional[float] = Field(default=None, ge=0)
    return_period_10: Optional[float] = Field(default=None, ge=0)
    return_period_25: Optional[float] = Field(default=None, ge=0)
    return_period_50: Optional[float] = Field(default=None, ge=0)
    return_period_100: Optional[float] = Field(default=None, ge=0)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "feature_id": 23021904,
                    "return_period_2": 141.6,
                    "return_period_5": 226.5,
                    "return_period_10": 283.2,
                    "return_period_25": 354.0,
                    "return_period_50": 410.6,
                    "return_period_100": 467.2,
                }
            ]
        }
    }

    def thresholds(self) -> dict[int, float]:
        """Year -> flow for every threshold the gateway reported."""
        flows = {}
        for year in RETURN_PERIOD_YEARS:
            value = getattr(self, f"return_period_{year}")
            if value is not None:
                flows[year] = value
        return flows
