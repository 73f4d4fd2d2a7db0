"""
Region classifier for Alibaba Cloud region identifiers.

Maps a region id to a geographic bucket (mainland China vs. everything else)
and to a human-readable display name.

Pure lookups, no API calls.  Hong Kong carries a ``cn-`` prefix but is
billed and routed as an international region.
"""

from __future__ import annotations

from detect.models import RegionGroup

MAINLAND_REGIONS: frozenset[str] = frozenset(
    {
        "cn-qingdao",
        "cn-beijing",
        "cn-zhangjiakou",
        "cn-huhehaote",
        "cn-wulanchabu",
        "cn-hangzhou",
        "cn-shanghai",
        "cn-nanjing",
        "cn-fuzhou",
        "cn-shenzhen",
        "cn-heyuan",
        "cn-guangzhou",
        "cn-chengdu",
        "cn-nanjing-finance",
        "cn-shanghai-finance-1",
        "cn-shenzhen-finance-1",
    }
)

MAINLAND_PREFIX = "cn-"

# Shares the mainland prefix but is billed and routed as international.
HONG_KONG_REGION = "cn-hongkong"

_REGION_NAMES: dict[str, str] = {
    # Mainland China
    "cn-qingdao": "Qingdao",
    "cn-beijing": "Beijing",
    "cn-zhangjiakou": "Zhangjiakou",
    "cn-huhehaote": "Hohhot",
    "cn-wulanchabu": "Ulanqab",
    "cn-hangzhou": "Hangzhou",
    "cn-shanghai": "Shanghai",
    "cn-nanjing": "Nanjing",
    "cn-fuzhou": "Fuzhou",
    "cn-shenzhen": "Shenzhen",
    "cn-heyuan": "Heyuan",
    "cn-guangzhou": "Guangzhou",
    "cn-chengdu": "Chengdu",
    # Outside mainland China
    "cn-hongkong": "Hong Kong",
    "ap-northeast-1": "Japan (Tokyo)",
    "ap-northeast-2": "South Korea (Seoul)",
    "ap-southeast-1": "Singapore",
    "ap-southeast-2": "Australia (Sydney)",
    "ap-southeast-3": "Malaysia (Kuala Lumpur)",
    "ap-southeast-5": "Indonesia (Jakarta)",
    "ap-southeast-6": "Philippines (Manila)",
    "ap-southeast-7": "Thailand (Bangkok)",
    "ap-south-1": "India (Mumbai)",
    "us-east-1": "US (Virginia)",
    "us-west-1": "US (Silicon Valley)",
    "eu-west-1": "UK (London)",
    "eu-central-1": "Germany (Frankfurt)",
    "me-east-1": "UAE (Dubai)",
}


def is_mainland_region(region_id: str) -> bool:
    """
    Return True if *region_id* is in mainland China.

    Known mainland regions match exactly; any other ``cn-`` region is also
    mainland, except Hong Kong.
    """
    if region_id in MAINLAND_REGIONS:
        return True
    return region_id.startswith(MAINLAND_PREFIX) and region_id != HONG_KONG_REGION


def classify_region(region_id: str) -> RegionGroup:
    """Return the traffic bucket for *region_id*."""
    if is_mainland_region(region_id):
        return RegionGroup.DOMESTIC
    return RegionGroup.INTERNATIONAL


def region_display_name(region_id: str) -> str:
    """Friendly name for *region_id*; unknown ids are returned unchanged."""
    return _REGION_NAMES.get(region_id, region_id)
