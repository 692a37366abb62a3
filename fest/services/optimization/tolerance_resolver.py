# fest/services/optimization/tolerance_resolver.py
"""
Per-nutrient tolerance bands.

Precedence (first hit wins):
1. request toleranceConfig[nutrient]
2. request toleranceConfig["default"]
3. settings.DEFAULT_TOLERANCES[nutrient]
4. settings.DEFAULT_TOLERANCES["default"]
"""
from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Union

from fest.config import ToleranceSetting
from fest.schemas.fertilizer import NUTRIENTS, Nutrient, ToleranceBand

logger = logging.getLogger(__name__)

DEFAULT_KEY = "default"

# Used only when settings carry neither the nutrient nor a "default" entry
FALLBACK_BAND = ToleranceBand(under_pct=10, over_pct=50)

BandLike = Union[ToleranceBand, ToleranceSetting]


def _normalize_key(key: str) -> Optional[str]:
    k = str(key).strip()
    if k.lower() == DEFAULT_KEY:
        return DEFAULT_KEY
    if k.upper() in NUTRIENTS:
        return k.upper()
    return None


def _normalize(raw: Optional[Mapping[str, BandLike]], source: str) -> Dict[str, ToleranceBand]:
    out: Dict[str, ToleranceBand] = {}
    for key, band in (raw or {}).items():
        norm = _normalize_key(key)
        if norm is None:
            logger.warning(
                "tolerance.unknown_key",
                extra={"reason": f"{source}:{key}"},
            )
            continue
        if isinstance(band, ToleranceBand):
            out[norm] = band
        else:
            out[norm] = ToleranceBand(
                under_pct=band.under_pct,
                over_pct=band.over_pct,
                soft_max_pct=band.soft_max_pct,
            )
    return out


def resolve_tolerances(
    overrides: Optional[Mapping[str, BandLike]],
    defaults: Optional[Mapping[str, BandLike]],
) -> Dict[Nutrient, ToleranceBand]:
    """Return one ToleranceBand for each of N, P, K, S."""
    req = _normalize(overrides, "request")
    base = _normalize(defaults, "settings")

    resolved: Dict[Nutrient, ToleranceBand] = {}
    for nutrient in NUTRIENTS:
        band = (
            req.get(nutrient)
            or req.get(DEFAULT_KEY)
            or base.get(nutrient)
            or base.get(DEFAULT_KEY)
            or FALLBACK_BAND
        )
        resolved[nutrient] = band
    return resolved
