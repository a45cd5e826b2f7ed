from __future__ import annotations

from typing import Dict, Optional


DEFAULT_REGION = "NorthAmerica"

# Canonical region name -> PingOne top-level domain.
_REGION_TLDS: Dict[str, str] = {
    "NorthAmerica": "com",
    "Europe": "eu",
    "AsiaPacific": "asia",
    "Canada": "ca",
    "Australia": "com.au",
}

_ALIASES: Dict[str, str] = {
    "na": "NorthAmerica",
    "us": "NorthAmerica",
    "northamerica": "NorthAmerica",
    "eu": "Europe",
    "europe": "Europe",
    "ap": "AsiaPacific",
    "apac": "AsiaPacific",
    "asia": "AsiaPacific",
    "asiapacific": "AsiaPacific",
    "ca": "Canada",
    "canada": "Canada",
    "au": "Australia",
    "australia": "Australia",
}


def is_known_region(region: Optional[str]) -> bool:
    return bool(region) and region.strip().lower() in _ALIASES


def normalize_region(region: Optional[str]) -> str:
    """Map any accepted alias to its canonical name; unknown -> NorthAmerica."""
    if not region:
        return DEFAULT_REGION
    return _ALIASES.get(region.strip().lower(), DEFAULT_REGION)


def auth_base_url(region: Optional[str]) -> str:
    return f"https://auth.pingone.{_REGION_TLDS[normalize_region(region)]}"


def api_base_url(region: Optional[str]) -> str:
    return f"https://api.pingone.{_REGION_TLDS[normalize_region(region)]}/v1"
