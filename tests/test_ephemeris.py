from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

import landing.ephemeris as ephemeris
from conftest import KERNEL_END, KERNEL_START
from landing.ephemeris import (
    EphemerisAcquisitionError,
    EphemerisError,
    ErfaPhaseAngleProvider,
    PhaseAngleProvider,
    SpicePhaseAngleProvider,
    as_utc,
    load_ephemeris,
    phase_provider_from_env,
    resolve_ephemeris_source,
)


def _angular_gap(a: float, b: float) -> float:
    gap = abs(a - b) % 360.0
    return min(gap, 360.0 - gap)


@pytest.mark.parametrize(
    ("instant", "expected"),
    [
        (datetime(2023, 8, 16, 9, 38, tzinfo=UTC), 0.0),  # new moon
        (datetime(2023, 8, 24, 9, 57, tzinfo=UTC), 90.0),  # first quarter
        (datetime(2023, 8, 31, 1, 35, tzinfo=UTC), 180.0),  # full moon
        (datetime(2019, 9, 6, 3, 10, tzinfo=UTC), 90.0),  # first quarter
    ],
)
def test_erfa_phase_matches_published_phases(instant: datetime, expected: float) -> None:
    phase = ErfaPhaseAngleProvider().phase_angle(instant)
    assert 0.0 <= phase < 360.0
    assert _angular_gap(phase, expected) < 0.5


def test_erfa_phase_advances_through_a_month() -> None:
    provider = ErfaPhaseAngleProvider()
    start = datetime(2023, 8, 16, 12, tzinfo=UTC)
    phases = [provider.phase_angle(start + timedelta(days=day)) for day in range(28)]
    assert all(0.0 <= phase < 360.0 for phase in phases)
    assert all(later > earlier for earlier, later in zip(phases, phases[1:]))


def test_providers_satisfy_protocol() -> None:
    assert isinstance(ErfaPhaseAngleProvider(), PhaseAngleProvider)
    assert isinstance(SpicePhaseAngleProvider(), PhaseAngleProvider)


def test_naive_datetimes_are_rejected() -> None:
    with pytest.raises(ValueError):
        as_utc(datetime(2023, 8, 23, 12, 33))
    with pytest.raises(ValueError):
        ErfaPhaseAngleProvider().phase_angle(datetime(2023, 8, 23, 12, 33))


def test_spice_provider_requires_kernels(clean_spice: None) -> None:
    with pytest.raises(EphemerisError):
        SpicePhaseAngleProvider().phase_angle(datetime(2023, 8, 23, tzinfo=UTC))


def test_load_ephemeris_errors(tmp_path: Path, clean_spice: None) -> None:
    with pytest.raises(EphemerisError):
        load_ephemeris(str(tmp_path / "missing"))
    with pytest.raises(EphemerisError):
        load_ephemeris(str(tmp_path))


def test_spice_provider_agrees_with_erfa(spice_kernels: list[str]) -> None:
    assert spice_kernels == ["moon_2023.bsp"]
    assert ephemeris.loaded_ephemeris_files() == ["moon_2023.bsp"]
    spice_provider = SpicePhaseAngleProvider()
    erfa_provider = ErfaPhaseAngleProvider()
    current = KERNEL_START + timedelta(hours=12)
    while current < KERNEL_END - timedelta(hours=12):
        assert _angular_gap(
            spice_provider.phase_angle(current), erfa_provider.phase_angle(current)
        ) < 0.05
        current += timedelta(hours=37)


def test_spice_lookup_outside_coverage(spice_kernels: list[str]) -> None:
    with pytest.raises(EphemerisError):
        SpicePhaseAngleProvider().phase_angle(datetime(2024, 1, 1, tzinfo=UTC))


def test_resolve_existing_kernel(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    kernel = tmp_path / "de442.bsp"
    kernel.write_bytes(b"DAF/SPK")
    monkeypatch.setenv("DE_BSP", str(kernel))
    assert resolve_ephemeris_source() == kernel

    monkeypatch.setenv("DE_BSP", str(tmp_path))
    assert resolve_ephemeris_source() == tmp_path


def test_resolve_rejects_non_bsp_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    bogus = tmp_path / "de442.txt"
    bogus.write_text("not a kernel")
    monkeypatch.setenv("DE_BSP", str(bogus))
    with pytest.raises(EphemerisAcquisitionError):
        resolve_ephemeris_source()


def test_resolve_downloads_into_empty_cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    downloads: list[tuple[str, Path]] = []

    def fake_download(url: str, destination: Path) -> None:
        downloads.append((url, destination))
        destination.write_bytes(b"DAF/SPK")

    cache = tmp_path / "cache"
    monkeypatch.delenv("DE_BSP", raising=False)
    monkeypatch.setenv("DE_BSP_CACHE_DIR", str(cache))
    monkeypatch.setattr(ephemeris, "_download_file", fake_download)

    assert resolve_ephemeris_source() == cache
    assert downloads == [(ephemeris.DEFAULT_EPHEMERIS_URL, cache / "de442.bsp")]

    # A populated cache is reused.
    assert resolve_ephemeris_source() == cache
    assert len(downloads) == 1


def test_failed_download_leaves_nothing_behind(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def refuse(*args, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx, "stream", refuse)
    destination = tmp_path / "kernels" / "de442.bsp"
    with pytest.raises(EphemerisAcquisitionError):
        ephemeris._download_file(ephemeris.DEFAULT_EPHEMERIS_URL, destination)
    assert not destination.exists()


def test_provider_from_env(
    kernel_dir: Path, clean_spice: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("LANDING_EPHEMERIS", raising=False)
    assert isinstance(phase_provider_from_env(), ErfaPhaseAngleProvider)

    monkeypatch.setenv("LANDING_EPHEMERIS", "horizons")
    with pytest.raises(ValueError):
        phase_provider_from_env()

    monkeypatch.setenv("LANDING_EPHEMERIS", "spice")
    monkeypatch.setenv("DE_BSP", str(kernel_dir))
    provider = phase_provider_from_env()
    assert isinstance(provider, SpicePhaseAngleProvider)
    assert ephemeris.loaded_ephemeris_files() == ["moon_2023.bsp"]
