"""Sun-elevation landing-window search for sites on the Moon."""

from .ephemeris import (
    EphemerisAcquisitionError,
    EphemerisError,
    ErfaPhaseAngleProvider,
    PhaseAngleProvider,
    SpicePhaseAngleProvider,
    load_ephemeris,
    phase_provider_from_env,
)
from .illumination import (
    ElevationSample,
    LandingSite,
    LandingWindow,
    NoBracketedCrossingError,
    calculate_sun_elevation,
    find_elevation_crossing,
    find_landing_windows,
    format_date,
    sample_elevations,
    sub_solar_point,
    survey_sites,
)

__all__ = [
    "LandingSite",
    "LandingWindow",
    "ElevationSample",
    "NoBracketedCrossingError",
    "calculate_sun_elevation",
    "find_elevation_crossing",
    "find_landing_windows",
    "format_date",
    "sample_elevations",
    "sub_solar_point",
    "survey_sites",
    "PhaseAngleProvider",
    "ErfaPhaseAngleProvider",
    "SpicePhaseAngleProvider",
    "EphemerisError",
    "EphemerisAcquisitionError",
    "load_ephemeris",
    "phase_provider_from_env",
]
