"""Pydantic models for API requests and responses."""

from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class ElevationQueryParams(BaseModel):
    """Validated query parameters for the ``/elevation`` endpoint."""

    lat: float = Field(..., ge=-90.0, le=90.0, description="Selenographic latitude in degrees")
    lon: float = Field(..., ge=-180.0, le=180.0, description="Selenographic longitude in degrees")
    time: datetime = Field(..., description="Instant (ISO-8601, UTC when no offset is given)")


class WindowQueryParams(BaseModel):
    """Validated query parameters for the ``/windows`` endpoint."""

    lat: float = Field(..., ge=-90.0, le=90.0, description="Selenographic latitude in degrees")
    lon: float = Field(..., ge=-180.0, le=180.0, description="Selenographic longitude in degrees")
    start: datetime = Field(..., description="Start of the search range")
    end: datetime = Field(..., description="End of the search range")
    min_elevation: float = Field(
        6.0, ge=-90.0, le=90.0, description="Lower edge of the Sun elevation band"
    )
    max_elevation: float = Field(
        9.0, ge=-90.0, le=90.0, description="Upper edge of the Sun elevation band"
    )
    step_hours: float = Field(
        3.0, ge=0.25, le=24.0, description="Sampling cadence used to bracket crossings"
    )


class ElevationResponse(BaseModel):
    """Sun elevation at a single instant."""

    ok: bool = True
    latitude: float
    longitude: float
    time_utc: str = Field(..., description="Instant in UTC (ISO-8601)")
    time_display: str = Field(..., description="Instant as YYYY-MM-DD HH:MM:SS UT")
    elevation_deg: float = Field(..., description="Sun elevation above the local horizon")
    phase_angle_deg: float = Field(..., description="Moon phase angle (0 = New, 180 = Full)")
    sub_solar_latitude: float
    sub_solar_longitude: float


class LandingWindowModel(BaseModel):
    """One rising pass of the Sun through the elevation band."""

    start_utc: str
    end_utc: str
    peak_utc: str
    start_display: str
    end_display: str
    peak_display: str
    peak_elevation_deg: float
    duration_hours: float


class WindowsResponse(BaseModel):
    """Landing windows found for a site within a search range."""

    ok: bool = True
    latitude: float
    longitude: float
    min_elevation: float
    max_elevation: float
    count: int
    windows: List[LandingWindowModel]


class HealthResponse(BaseModel):
    """Health-check response."""

    ok: bool = True
    ephemeris_backend: str
    ephemeris_loaded: bool
    files: List[str]


class ErrorResponse(BaseModel):
    """Error payload."""

    ok: bool = False
    code: str
    error: str
