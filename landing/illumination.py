"""Sun elevation and landing-window search for fixed points on the Moon.

The Sun's position is reduced to the sub-solar point, estimated from the
Moon's phase angle alone: at New Moon the Sun stands over the far side
(longitude 180), at Full Moon over the near side (longitude 0), with a small
latitude oscillation of +/-1.54 degrees. Elevation at a site is the
complement of its great-circle distance to that point.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, cpu_count, delayed

from .ephemeris import ErfaPhaseAngleProvider, PhaseAngleProvider, as_utc

__all__ = [
    "LandingSite",
    "SubSolarPoint",
    "ElevationSample",
    "LandingWindow",
    "NoBracketedCrossingError",
    "sub_solar_point",
    "calculate_sun_elevation",
    "find_elevation_crossing",
    "sample_elevations",
    "find_landing_windows",
    "survey_sites",
    "format_date",
]

LOGGER = logging.getLogger(__name__)

SUBSOLAR_LATITUDE_AMPLITUDE = 1.54  # degrees
DEFAULT_MIN_ELEVATION = 6.0
DEFAULT_MAX_ELEVATION = 9.0
DEFAULT_TOLERANCE = timedelta(milliseconds=60_000)
DEFAULT_SAMPLE_STEP = timedelta(hours=3)

_DEFAULT_PROVIDER: Optional[PhaseAngleProvider] = None
_PROVIDER_LOCK = Lock()


class NoBracketedCrossingError(ValueError):
    """Raised when a search interval does not bracket a threshold crossing."""


@dataclass(frozen=True)
class LandingSite:
    """Selenographic site; latitude in [-90, 90], longitude in [-180, 180]."""

    latitude: float
    longitude: float
    name: Optional[str] = None


@dataclass(frozen=True)
class SubSolarPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class ElevationSample:
    time: datetime
    elevation: float


@dataclass(frozen=True)
class LandingWindow:
    """A rising pass of the Sun through the elevation band at one site."""

    start_date: datetime
    end_date: datetime
    peak_time: datetime
    peak_elevation: float
    duration_hours: float


def _resolve_provider(provider: Optional[PhaseAngleProvider]) -> PhaseAngleProvider:
    global _DEFAULT_PROVIDER

    if provider is not None:
        return provider
    if _DEFAULT_PROVIDER is None:
        with _PROVIDER_LOCK:
            if _DEFAULT_PROVIDER is None:
                _DEFAULT_PROVIDER = ErfaPhaseAngleProvider()
    return _DEFAULT_PROVIDER


def _normalize_longitude(longitude: float) -> float:
    while longitude > 180.0:
        longitude -= 360.0
    while longitude <= -180.0:
        longitude += 360.0
    return longitude


def sub_solar_point(
    instant: datetime, provider: Optional[PhaseAngleProvider] = None
) -> SubSolarPoint:
    """Return the Moon-fixed point with the Sun at the zenith at *instant*."""

    phase = _resolve_provider(provider).phase_angle(instant)
    longitude = _normalize_longitude(180.0 - phase)
    latitude = SUBSOLAR_LATITUDE_AMPLITUDE * math.sin(math.radians(phase))
    return SubSolarPoint(latitude=latitude, longitude=longitude)


def calculate_sun_elevation(
    site: LandingSite,
    instant: datetime,
    provider: Optional[PhaseAngleProvider] = None,
) -> float:
    """Sun elevation in degrees above the local horizon at *site*.

    Negative values mean the Sun is below the horizon.
    """

    sub_solar = sub_solar_point(instant, provider)
    lat1 = math.radians(site.latitude)
    lat2 = math.radians(sub_solar.latitude)
    d_lon = math.radians(sub_solar.longitude - site.longitude)
    cos_distance = (
        math.sin(lat1) * math.sin(lat2)
        + math.cos(lat1) * math.cos(lat2) * math.cos(d_lon)
    )
    distance = math.degrees(math.acos(float(np.clip(cos_distance, -1.0, 1.0))))
    return 90.0 - distance


def find_elevation_crossing(
    site: LandingSite,
    lo: datetime,
    hi: datetime,
    threshold: float,
    tolerance: timedelta = DEFAULT_TOLERANCE,
    provider: Optional[PhaseAngleProvider] = None,
) -> datetime:
    """Locate the instant in ``[lo, hi]`` where the elevation crosses *threshold*.

    Parameters
    ----------
    site:
        Landing site.
    lo, hi:
        Bracketing instants; the elevation minus *threshold* must not have
        the same strict sign at both ends.
    threshold:
        Elevation in degrees.
    tolerance:
        Width of the final bracket.

    Returns
    -------
    datetime
        Midpoint of the final bracket.

    Raises
    ------
    NoBracketedCrossingError
        If the elevation is strictly above or strictly below *threshold* at
        both ends of the interval.
    """

    if tolerance <= timedelta(0):
        raise ValueError("tolerance must be positive")
    provider = _resolve_provider(provider)

    def offset(instant: datetime) -> float:
        return calculate_sun_elevation(site, instant, provider) - threshold

    low_val = offset(lo)
    high_val = offset(hi)
    if low_val * high_val > 0:
        raise NoBracketedCrossingError(
            f"Elevation does not cross {threshold} deg between "
            f"{lo.isoformat()} and {hi.isoformat()}"
        )

    low_dt, high_dt = lo, hi
    while high_dt - low_dt > tolerance:
        mid_dt = low_dt + (high_dt - low_dt) / 2
        mid_val = offset(mid_dt)
        if low_val * mid_val < 0:
            high_dt = mid_dt
        else:
            low_dt, low_val = mid_dt, mid_val
    return low_dt + (high_dt - low_dt) / 2


def sample_elevations(
    site: LandingSite,
    start: datetime,
    end: datetime,
    step: timedelta = DEFAULT_SAMPLE_STEP,
    provider: Optional[PhaseAngleProvider] = None,
) -> List[ElevationSample]:
    """Sample the elevation at *site* every *step* from *start* until *end*."""

    if step <= timedelta(0):
        raise ValueError("step must be positive")
    provider = _resolve_provider(provider)

    samples: List[ElevationSample] = []
    current = start
    while current <= end:
        samples.append(
            ElevationSample(time=current, elevation=calculate_sun_elevation(site, current, provider))
        )
        current += step
    return samples


def _find_window_end(
    site: LandingSite,
    samples: Sequence[ElevationSample],
    start_idx: int,
    min_elevation: float,
    max_elevation: float,
    tolerance: timedelta,
    provider: PhaseAngleProvider,
) -> Optional[Tuple[datetime, float, int]]:
    """Close the window opened at ``samples[start_idx]``.

    Returns the refined end instant, the highest sampled elevation seen before
    the exit and the index of the sample following the exit, or ``None`` when
    the series runs out first.
    """

    peak = samples[start_idx].elevation
    for idx in range(start_idx, len(samples) - 1):
        current, following = samples[idx], samples[idx + 1]
        peak = max(peak, current.elevation)

        if current.elevation < max_elevation <= following.elevation:
            threshold = max_elevation
        elif following.elevation < min_elevation <= current.elevation:
            # Sun turned back before reaching the ceiling.
            threshold = min_elevation
        else:
            continue
        end = find_elevation_crossing(
            site, current.time, following.time, threshold, tolerance, provider
        )
        return end, peak, idx + 1
    return None


def find_landing_windows(
    site: LandingSite,
    start: datetime,
    end: datetime,
    min_elevation: float = DEFAULT_MIN_ELEVATION,
    max_elevation: float = DEFAULT_MAX_ELEVATION,
    *,
    sample_step: timedelta = DEFAULT_SAMPLE_STEP,
    tolerance: timedelta = DEFAULT_TOLERANCE,
    provider: Optional[PhaseAngleProvider] = None,
) -> List[LandingWindow]:
    """Find every rising pass of the Sun through ``[min_elevation, max_elevation]``.

    Only sunrise-side crossings count: a lander arriving then has the whole
    lunar day ahead of it. A window opens when the elevation rises through
    *min_elevation* and closes when it rises through *max_elevation*, or when
    it sinks back below *min_elevation* without getting there. A window still
    open at *end* is not reported.

    Parameters
    ----------
    site:
        Landing site.
    start, end:
        Search range.
    min_elevation, max_elevation:
        Elevation band in degrees.
    sample_step:
        Sampling cadence used to bracket crossings.
    tolerance:
        Time tolerance of each refined crossing.
    provider:
        Phase-angle source; the ERFA provider when omitted.

    Returns
    -------
    list[LandingWindow]
        Windows in chronological order, roughly one per synodic month.
    """

    if min_elevation >= max_elevation:
        raise ValueError("min_elevation must be lower than max_elevation")
    provider = _resolve_provider(provider)
    samples = sample_elevations(site, start, end, sample_step, provider)

    windows: List[LandingWindow] = []
    idx = 0
    while idx < len(samples) - 1:
        current, following = samples[idx], samples[idx + 1]
        if not current.elevation < min_elevation <= following.elevation:
            idx += 1
            continue

        window_start = find_elevation_crossing(
            site, current.time, following.time, min_elevation, tolerance, provider
        )
        result = _find_window_end(
            site, samples, idx + 1, min_elevation, max_elevation, tolerance, provider
        )
        if result is None:
            break
        window_end, peak, idx = result
        if window_end > window_start:
            windows.append(
                LandingWindow(
                    start_date=window_start,
                    end_date=window_end,
                    peak_time=window_start + (window_end - window_start) / 2,
                    peak_elevation=min(peak, max_elevation),
                    duration_hours=(window_end - window_start).total_seconds() / 3600.0,
                )
            )

    LOGGER.debug(
        json.dumps(
            {
                "event": "landing_windows",
                "site": site.name or [site.latitude, site.longitude],
                "samples": len(samples),
                "windows": len(windows),
            }
        )
    )
    return windows


def survey_sites(
    sites: Iterable[LandingSite],
    start: datetime,
    end: datetime,
    min_elevation: float = DEFAULT_MIN_ELEVATION,
    max_elevation: float = DEFAULT_MAX_ELEVATION,
    *,
    n_jobs: int = 1,
    **search_options,
) -> List[List[LandingWindow]]:
    """Run :func:`find_landing_windows` for several sites, preserving order."""

    sites = list(sites)
    if not sites:
        return []

    if n_jobs < 0:
        n_jobs = cpu_count() + 1 + n_jobs
    n_jobs = max(1, min(n_jobs, len(sites)))
    if n_jobs == 1:
        return [
            find_landing_windows(
                site, start, end, min_elevation, max_elevation, **search_options
            )
            for site in sites
        ]

    return Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(find_landing_windows)(
            site, start, end, min_elevation, max_elevation, **search_options
        )
        for site in sites
    )


def format_date(instant: datetime) -> str:
    """Render *instant* as ``YYYY-MM-DD HH:MM:SS UT``, truncated to seconds."""

    # strftime("%Y") does not zero-pad years below 1000.
    utc = as_utc(instant)
    return (
        f"{utc.year:04d}-{utc.month:02d}-{utc.day:02d} "
        f"{utc.hour:02d}:{utc.minute:02d}:{utc.second:02d} UT"
    )
