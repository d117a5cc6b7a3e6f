from __future__ import annotations

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Iterable

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import erfa
import numpy as np
import pytest
import spiceypy as spice

import landing.ephemeris as ephemeris

AU_KM = 149597870.700
STEP_HOURS = 1
SYNODIC_MONTH_HOURS = 29.530588853 * 24.0

KERNEL_START = datetime(2023, 8, 1, tzinfo=UTC)
KERNEL_END = datetime(2023, 9, 2, tzinfo=UTC)


class ConstantPhase:
    def __init__(self, phase: float) -> None:
        self.phase = phase

    def phase_angle(self, instant: datetime) -> float:
        return self.phase


class LinearPhase:
    """Phase advancing uniformly from *phase_at_epoch* at *degrees_per_hour*."""

    def __init__(self, epoch: datetime, degrees_per_hour: float, phase_at_epoch: float = 0.0) -> None:
        self.epoch = epoch
        self.degrees_per_hour = degrees_per_hour
        self.phase_at_epoch = phase_at_epoch

    def phase_angle(self, instant: datetime) -> float:
        hours = (instant - self.epoch).total_seconds() / 3600.0
        return (self.phase_at_epoch + self.degrees_per_hour * hours) % 360.0


def _datetime_to_tt(dt: datetime) -> tuple[float, float]:
    utc1, utc2 = erfa.dtf2d(
        "UTC",
        dt.year,
        dt.month,
        dt.day,
        dt.hour,
        dt.minute,
        dt.second + dt.microsecond / 1_000_000,
    )
    tai1, tai2 = erfa.utctai(utc1, utc2)
    return erfa.taitt(tai1, tai2)


def _datetime_to_et(dt: datetime) -> float:
    tt1, tt2 = _datetime_to_tt(dt)
    return (tt1 - erfa.DJ00) * erfa.DAYSEC + tt2 * erfa.DAYSEC


def _to_km_state(pv) -> np.ndarray:
    pos_km = np.array(pv["p"], dtype=float) * AU_KM
    vel_km_s = np.array(pv["v"], dtype=float) * (AU_KM / erfa.DAYSEC)
    return np.concatenate([pos_km, vel_km_s])


def _generate_test_kernel(output: Path) -> None:
    if output.exists():
        return
    step = timedelta(hours=STEP_HOURS)
    sun_states: list[np.ndarray] = []
    earth_states: list[np.ndarray] = []
    moon_states: list[np.ndarray] = []
    ets: list[float] = []
    current = KERNEL_START
    while current <= KERNEL_END:
        tt1, tt2 = _datetime_to_tt(current)
        pvh, pvb = erfa.epv00(tt1, tt2)
        sun_states.append(-_to_km_state(pvh))
        earth_states.append(_to_km_state(pvb))
        moon_states.append(_to_km_state(erfa.moon98(tt1, tt2)))
        ets.append(_datetime_to_et(current))
        current += step
    step_seconds = ets[1] - ets[0]
    segments = (
        (10, 399, "SUNTEST", sun_states),
        (399, 0, "EARTHTEST", earth_states),
        (301, 399, "MOONTEST", moon_states),
    )
    handle = spice.spkopn(str(output), "LANDINGTEST", 0)
    try:
        for body, center, segid, states in segments:
            spice.spkw08(
                handle,
                body,
                center,
                "J2000",
                ets[0],
                ets[-1],
                segid,
                7,
                len(ets),
                np.array(states, dtype=float),
                ets[0],
                step_seconds,
            )
    finally:
        spice.spkcls(handle)


@pytest.fixture(scope="session")
def kernel_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    directory = tmp_path_factory.mktemp("kernels")
    _generate_test_kernel(directory / "moon_2023.bsp")
    return directory


@pytest.fixture
def clean_spice() -> Iterable[None]:
    spice.kclear()
    ephemeris._LOADED_FILES = None  # type: ignore[attr-defined]
    yield
    spice.kclear()
    ephemeris._LOADED_FILES = None  # type: ignore[attr-defined]


@pytest.fixture
def spice_kernels(kernel_dir: Path, clean_spice: None) -> Iterable[list[str]]:
    yield ephemeris.load_ephemeris(str(kernel_dir))
