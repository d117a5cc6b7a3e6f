"""FastAPI application exposing lunar landing-window computations."""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from landing.ephemeris import (
    EphemerisAcquisitionError,
    EphemerisError,
    ErfaPhaseAngleProvider,
    PhaseAngleProvider,
    loaded_ephemeris_files,
    phase_provider_from_env,
)
from landing.illumination import (
    LandingSite,
    LandingWindow,
    calculate_sun_elevation,
    find_landing_windows,
    format_date,
    sub_solar_point,
)
from models import (
    ElevationQueryParams,
    ElevationResponse,
    ErrorResponse,
    HealthResponse,
    LandingWindowModel,
    WindowQueryParams,
    WindowsResponse,
)

logging.basicConfig(level=logging.INFO, format="%(message)s")
LOGGER = logging.getLogger("landing-api")

APP_DESCRIPTION = (
    "Rising Sun-elevation windows for landing sites on the Moon"
)

# Five years; with the 15-minute cadence floor this bounds one request to ~175k samples.
MAX_SEARCH_SPAN = timedelta(days=5 * 366)

PHASE_PROVIDER: Optional[PhaseAngleProvider] = None
EPHEMERIS_BACKEND = "erfa"
EPHEMERIS_FILES: List[str] = []


@asynccontextmanager
async def lifespan(app: FastAPI):
    global PHASE_PROVIDER, EPHEMERIS_BACKEND, EPHEMERIS_FILES
    try:
        PHASE_PROVIDER = phase_provider_from_env()
    except (EphemerisAcquisitionError, EphemerisError, ValueError) as exc:
        LOGGER.error(json.dumps({"event": "ephemeris_setup_failed", "error": str(exc)}))
        raise
    EPHEMERIS_BACKEND = os.environ.get("LANDING_EPHEMERIS", "erfa").strip().lower()
    EPHEMERIS_FILES = loaded_ephemeris_files()
    LOGGER.info(
        json.dumps(
            {"event": "startup", "ephemeris_backend": EPHEMERIS_BACKEND, "files": EPHEMERIS_FILES}
        )
    )
    yield


app = FastAPI(
    title="Landing Window API",
    description=APP_DESCRIPTION,
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)


def _provider() -> PhaseAngleProvider:
    global PHASE_PROVIDER

    if PHASE_PROVIDER is None:
        PHASE_PROVIDER = ErfaPhaseAngleProvider()
    return PHASE_PROVIDER


def _assume_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _format_utc(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _window_model(window: LandingWindow) -> LandingWindowModel:
    return LandingWindowModel(
        start_utc=_format_utc(window.start_date),
        end_utc=_format_utc(window.end_date),
        peak_utc=_format_utc(window.peak_time),
        start_display=format_date(window.start_date),
        end_display=format_date(window.end_date),
        peak_display=format_date(window.peak_time),
        peak_elevation_deg=window.peak_elevation,
        duration_hours=window.duration_hours,
    )


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    payload = ErrorResponse(code=code, error=message)
    LOGGER.error(json.dumps({"event": "error", "code": code, "message": message}))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(RequestValidationError)
async def on_invalid_query(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "query")
        problems.append(f"{field}: {error['msg']}" if field else error["msg"])
    return _error_response(422, "validation_error", "; ".join(problems))


@app.exception_handler(HTTPException)
async def on_http_error(request: Request, exc: HTTPException) -> JSONResponse:
    # Endpoints only raise with string details.
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def on_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception(
        json.dumps({"event": "unhandled", "path": request.url.path}), exc_info=exc
    )
    return _error_response(500, "internal_error", "Unhandled server error")


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        ok=True,
        ephemeris_backend=EPHEMERIS_BACKEND,
        ephemeris_loaded=PHASE_PROVIDER is not None,
        files=EPHEMERIS_FILES,
    )


@app.get(
    "/elevation",
    response_model=ElevationResponse,
    responses={422: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def elevation_endpoint(params: ElevationQueryParams = Depends()) -> ElevationResponse:
    start_time = time.perf_counter()
    instant = _assume_utc(params.time)
    site = LandingSite(latitude=params.lat, longitude=params.lon)
    provider = _provider()
    try:
        phase = provider.phase_angle(instant)
        sub_solar = sub_solar_point(instant, provider)
        elevation = calculate_sun_elevation(site, instant, provider)
    except EphemerisError as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    duration_ms = (time.perf_counter() - start_time) * 1000.0
    LOGGER.info(
        json.dumps(
            {
                "event": "elevation",
                "lat": params.lat,
                "lon": params.lon,
                "time": _format_utc(instant),
                "elevation": round(elevation, 4),
                "duration_ms": round(duration_ms, 3),
            }
        )
    )
    return ElevationResponse(
        latitude=params.lat,
        longitude=params.lon,
        time_utc=_format_utc(instant),
        time_display=format_date(instant),
        elevation_deg=elevation,
        phase_angle_deg=phase,
        sub_solar_latitude=sub_solar.latitude,
        sub_solar_longitude=sub_solar.longitude,
    )


@app.get(
    "/windows",
    response_model=WindowsResponse,
    responses={
        400: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
def windows_endpoint(params: WindowQueryParams = Depends()) -> WindowsResponse:
    start_time = time.perf_counter()
    start = _assume_utc(params.start)
    end = _assume_utc(params.end)
    if end <= start:
        raise HTTPException(status_code=400, detail="end must be later than start")
    if end - start > MAX_SEARCH_SPAN:
        raise HTTPException(
            status_code=400,
            detail=f"search range may not exceed {MAX_SEARCH_SPAN.days} days",
        )

    site = LandingSite(latitude=params.lat, longitude=params.lon)
    try:
        windows = find_landing_windows(
            site,
            start,
            end,
            params.min_elevation,
            params.max_elevation,
            sample_step=timedelta(hours=params.step_hours),
            provider=_provider(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except EphemerisError as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    duration_ms = (time.perf_counter() - start_time) * 1000.0
    LOGGER.info(
        json.dumps(
            {
                "event": "windows",
                "lat": params.lat,
                "lon": params.lon,
                "start": _format_utc(start),
                "end": _format_utc(end),
                "windows": len(windows),
                "duration_ms": round(duration_ms, 3),
            }
        )
    )
    return WindowsResponse(
        latitude=params.lat,
        longitude=params.lon,
        min_elevation=params.min_elevation,
        max_elevation=params.max_elevation,
        count=len(windows),
        windows=[_window_model(window) for window in windows],
    )
