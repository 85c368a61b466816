"""Location sources for geobeacon.

Each source implements the LocationSource ABC and returns a LocationSample
or raises LocationUnavailable.

Available sources:
    TermuxLocationSource — Android positioning via Termux:API ``termux-location``
    FixedLocationSource  — Configured coordinate (desktop development, dry runs)
"""

from geobeacon.telemetry.sources.fixed import FixedLocationSource
from geobeacon.telemetry.sources.termux import TermuxLocationSource

__all__ = [
    "FixedLocationSource",
    "TermuxLocationSource",
]

# Registry: source_id → source class
SOURCE_REGISTRY: dict[str, type] = {
    "termux": TermuxLocationSource,
    "fixed": FixedLocationSource,
}


def get_source(source_id: str) -> "type":
    """Return the location source class for a given slug.

    Args:
        source_id: e.g. 'termux', 'fixed'

    Returns:
        The source class (not an instance).

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in SOURCE_REGISTRY:
        raise KeyError(
            f"No location source registered for '{source_id}'. "
            f"Available: {list(SOURCE_REGISTRY)}"
        )
    return SOURCE_REGISTRY[source_id]
