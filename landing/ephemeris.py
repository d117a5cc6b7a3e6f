"""Moon phase-angle providers and CSPICE ephemeris kernel acquisition."""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import List, Optional, Protocol, Tuple, runtime_checkable

import erfa
import httpx
import numpy as np
import spiceypy as spice
from spiceypy.utils.exceptions import SpiceyError

__all__ = [
    "PhaseAngleProvider",
    "ErfaPhaseAngleProvider",
    "SpicePhaseAngleProvider",
    "EphemerisError",
    "EphemerisAcquisitionError",
    "as_utc",
    "load_ephemeris",
    "loaded_ephemeris_files",
    "resolve_ephemeris_source",
    "phase_provider_from_env",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_EPHEMERIS_URL = (
    "https://naif.jpl.nasa.gov/pub/naif/generic_kernels/spk/planets/de442.bsp"
)
DEFAULT_EPHEMERIS_FILENAME = "de442.bsp"
DEFAULT_CACHE_DIR = Path.home() / ".landing" / "kernels"

EPHEMERIS_BACKENDS = ("erfa", "spice")

_LOADED_FILES: Optional[List[str]] = None
_LOAD_LOCK = Lock()
_SPICE_LOCK = Lock()


class EphemerisError(RuntimeError):
    """Raised when ephemeris loading or computation fails."""


class EphemerisAcquisitionError(RuntimeError):
    """Raised when the default ephemeris cannot be acquired."""


@runtime_checkable
class PhaseAngleProvider(Protocol):
    """Anything that maps a UTC instant to the Moon's phase angle.

    The phase angle is in degrees within ``[0, 360)``: 0 at New Moon and 180
    at Full Moon.
    """

    def phase_angle(self, instant: datetime) -> float:
        ...


@dataclass(frozen=True)
class _TimeScales:
    """Container for time-scale representations of a UTC instant."""

    utc: Tuple[float, float]
    tt: Tuple[float, float]
    et: float


def as_utc(instant: datetime) -> datetime:
    """Return *instant* expressed in UTC; naive datetimes are rejected."""

    if instant.tzinfo is None:
        raise ValueError("datetime must be timezone-aware (UTC)")
    return instant.astimezone(UTC)


def _datetime_to_timescales(dt: datetime) -> _TimeScales:
    dt_utc = as_utc(dt)
    utc1, utc2 = erfa.dtf2d(
        "UTC",
        dt_utc.year,
        dt_utc.month,
        dt_utc.day,
        dt_utc.hour,
        dt_utc.minute,
        dt_utc.second + dt_utc.microsecond / 1_000_000,
    )
    tai1, tai2 = erfa.utctai(utc1, utc2)
    tt1, tt2 = erfa.taitt(tai1, tai2)
    et = (tt1 - erfa.DJ00) * erfa.DAYSEC + tt2 * erfa.DAYSEC
    return _TimeScales(utc=(utc1, utc2), tt=(tt1, tt2), et=et)


def _ecliptic_longitude(vector: np.ndarray, rotation: np.ndarray) -> float:
    """Longitude in degrees of an ICRS vector on the ecliptic of date."""

    ecliptic = rotation @ vector
    return math.degrees(math.atan2(ecliptic[1], ecliptic[0])) % 360.0


def _phase_from_vectors(moon: np.ndarray, sun: np.ndarray, tt: Tuple[float, float]) -> float:
    rotation = np.array(erfa.ecm06(*tt), dtype=float)
    lam_moon = _ecliptic_longitude(moon, rotation)
    lam_sun = _ecliptic_longitude(sun, rotation)
    # A difference just below 360 can round up to exactly 360.0.
    return ((lam_moon - lam_sun) % 360.0) % 360.0


class ErfaPhaseAngleProvider:
    """Phase angle from the analytic series shipped with ERFA.

    The Sun comes from ``epv00`` (VSOP2000-based Earth ephemeris) and the Moon
    from ``moon98`` (Meeus' ELP2000-82 truncation); no kernels are needed.
    Positions are geometric, which is well inside the tolerance of the
    sub-solar model they feed.
    """

    def phase_angle(self, instant: datetime) -> float:
        times = _datetime_to_timescales(instant)
        pvh, _ = erfa.epv00(*times.tt)
        sun = -np.array(pvh["p"], dtype=float)
        moon = np.array(erfa.moon98(*times.tt)["p"], dtype=float)
        return _phase_from_vectors(moon, sun, times.tt)

    def __repr__(self) -> str:
        return "ErfaPhaseAngleProvider()"


class SpicePhaseAngleProvider:
    """Phase angle from JPL DE kernels loaded with :func:`load_ephemeris`."""

    def __init__(self, aberration: str = "LT+S") -> None:
        self.aberration = aberration

    def phase_angle(self, instant: datetime) -> float:
        if _LOADED_FILES is None:
            raise EphemerisError("Ephemeris kernels have not been loaded")
        times = _datetime_to_timescales(instant)
        try:
            with _SPICE_LOCK:
                moon, _ = spice.spkpos("MOON", times.et, "J2000", self.aberration, "EARTH")
                sun, _ = spice.spkpos("SUN", times.et, "J2000", self.aberration, "EARTH")
        except SpiceyError as exc:
            raise EphemerisError(f"SPICE lookup failed at {instant.isoformat()}: {exc}") from exc
        return _phase_from_vectors(
            np.array(moon, dtype=float), np.array(sun, dtype=float), times.tt
        )

    def __repr__(self) -> str:
        return f"SpicePhaseAngleProvider(aberration={self.aberration!r})"


def _spk_kernels(kernel_dir: Path) -> List[Path]:
    if not kernel_dir.is_dir():
        raise EphemerisError(f"Ephemeris directory not found: {kernel_dir}")
    kernels = sorted(
        entry for entry in kernel_dir.iterdir() if entry.is_file() and entry.suffix.lower() == ".bsp"
    )
    if not kernels:
        raise EphemerisError(f"No .bsp ephemeris files found in directory: {kernel_dir}")
    return kernels


def load_ephemeris(bsp_dir: str) -> List[str]:
    """Furnish every ``.bsp`` kernel in *bsp_dir* and return their names.

    Kernels are furnished once per process; later calls return the names
    recorded by the first successful one. A kernel SPICE refuses unloads
    everything furnished so far and raises :class:`EphemerisError`.
    """

    global _LOADED_FILES

    with _LOAD_LOCK:
        if _LOADED_FILES is None:
            kernels = _spk_kernels(Path(bsp_dir).expanduser())
            for kernel in kernels:
                try:
                    spice.furnsh(str(kernel))
                except SpiceyError as exc:
                    spice.kclear()
                    raise EphemerisError(f"SPICE rejected kernel {kernel.name}: {exc}") from exc
            _LOADED_FILES = [kernel.name for kernel in kernels]
            LOGGER.info(json.dumps({"event": "ephemeris_loaded", "files": _LOADED_FILES}))
        return list(_LOADED_FILES)


def loaded_ephemeris_files() -> List[str]:
    return list(_LOADED_FILES or [])


def _download_file(url: str, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    LOGGER.info(
        json.dumps(
            {"event": "ephemeris_downloading", "url": url, "destination": str(destination)}
        )
    )
    try:
        with httpx.stream("GET", url, timeout=httpx.Timeout(120.0, connect=30.0)) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length", "0")) or None
            received = 0
            with destination.open("wb") as handle:
                for chunk in response.iter_bytes(chunk_size=1 << 20):
                    handle.write(chunk)
                    received += len(chunk)
    except (httpx.HTTPError, OSError) as exc:
        if destination.exists():
            destination.unlink()
        raise EphemerisAcquisitionError(f"Failed to download ephemeris from {url}: {exc}") from exc
    LOGGER.info(
        json.dumps(
            {
                "event": "ephemeris_downloaded",
                "url": url,
                "destination": str(destination),
                "bytes": received,
                "total": total,
            }
        )
    )


def _ensure_ephemeris(path: Path) -> Path:
    """Ensure *path* references an existing BSP file or directory containing one."""

    if path.is_file():
        if path.suffix.lower() != ".bsp":
            raise EphemerisAcquisitionError(f"Ephemeris file must have .bsp extension: {path}")
        return path
    if path.exists() and not path.is_dir():
        raise EphemerisAcquisitionError(f"Ephemeris path is not a file or directory: {path}")

    if not path.exists() and path.suffix.lower() == ".bsp":
        _download_file(DEFAULT_EPHEMERIS_URL, path)
        return path

    path.mkdir(parents=True, exist_ok=True)
    if not any(path.glob("*.bsp")):
        _download_file(DEFAULT_EPHEMERIS_URL, path / DEFAULT_EPHEMERIS_FILENAME)
    return path


def resolve_ephemeris_source() -> Path:
    """Return a path to a usable ephemeris kernel, downloading it if necessary."""

    override = os.environ.get("DE_BSP")
    if override:
        return _ensure_ephemeris(Path(override).expanduser())

    cache_root = Path(os.environ.get("DE_BSP_CACHE_DIR", str(DEFAULT_CACHE_DIR))).expanduser()
    return _ensure_ephemeris(cache_root)


def phase_provider_from_env() -> PhaseAngleProvider:
    """Build the phase provider named by ``LANDING_EPHEMERIS``.

    ``erfa`` (the default) needs nothing on disk. ``spice`` resolves and loads
    DE kernels first, downloading them when the cache is empty.
    """

    backend = os.environ.get("LANDING_EPHEMERIS", "erfa").strip().lower()
    if backend not in EPHEMERIS_BACKENDS:
        raise ValueError(
            f"Unsupported ephemeris backend {backend!r}; expected one of {EPHEMERIS_BACKENDS}"
        )
    if backend == "erfa":
        return ErfaPhaseAngleProvider()

    source = resolve_ephemeris_source()
    kernel_dir = source.parent if source.is_file() else source
    load_ephemeris(str(kernel_dir))
    return SpicePhaseAngleProvider()
