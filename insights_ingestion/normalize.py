"""
Normalization of raw Graph API insight records.

normalize_insight is pure: the same raw record always yields the same
output and malformed input degrades to zero values instead of raising.
"""

from typing import Any, Dict, Mapping, Optional

from insights_ingestion.conversions import extract_conversions, extract_standard
from insights_ingestion.levels import LevelSpec
from insights_ingestion.utils.numbers import non_negative_float, non_negative_int, ratio


PLATFORM = "Meta"


def _text(value: Any) -> Optional[str]:
    """Identity/media strings: None when absent or blank."""
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _creative(raw: Mapping[str, Any]) -> Dict[str, Optional[str]]:
    creative = raw.get("creative") or raw.get("ad_creative")
    if not isinstance(creative, Mapping):
        creative = {}
    return {
        "creative_id": _text(creative.get("id")) or _text(raw.get("creative_id")),
        "creative_name": _text(creative.get("name")),
        "image_url": _text(creative.get("image_url")),
        "thumbnail_url": _text(creative.get("thumbnail_url")),
    }


def compute_metrics(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Volume, cost and standard conversion metrics for one raw record.

    Ratios are only computed for strictly positive denominators:
        cpm = spend / impressions * 1000
        cpc = spend / clicks
        cpl = spend / leads
        cpp = spend / purchases
    """
    impressions = non_negative_int(raw.get("impressions"))
    clicks = non_negative_int(raw.get("clicks"))
    spend = non_negative_float(raw.get("spend"))

    standard = extract_standard(raw.get("actions"), raw.get("action_values"))
    leads = standard["leads"]
    purchases = standard["purchases"]

    return {
        "impressions": impressions,
        "reach": non_negative_int(raw.get("reach")),
        "clicks": clicks,
        "spend": spend,
        "ctr": non_negative_float(raw.get("ctr")),
        "cpm": ratio(spend, impressions, 1000),
        "cpc": ratio(spend, clicks),
        "leads": leads,
        "purchases": purchases,
        "purchase_value": standard["purchase_value"],
        "cpl": ratio(spend, leads),
        "cpp": ratio(spend, purchases),
    }


def normalize_insight(
    raw: Mapping[str, Any],
    level: LevelSpec,
    custom_conversions: Optional[Mapping[str, str]] = None,
    conversion_match: str = "action_target_id"
) -> Dict[str, Any]:
    """
    Convert one raw insight record into the canonical row for its level.

    Args:
        raw: Element of the insights response "data" array
        level: Reporting level the record was requested at
        custom_conversions: External identifier -> column name table
        conversion_match: Action field matched against the table

    Returns:
        Flat dict with identity, metric, custom conversion and creative fields.
        Numeric fields are always present; identity/media strings may be None.
    """
    if not isinstance(raw, Mapping):
        raw = {}

    row: Dict[str, Any] = {"platform": PLATFORM}
    for field_name in level.identity_fields:
        row[field_name] = _text(raw.get(field_name))
    row["date_start"] = _text(raw.get("date_start"))
    row["date_stop"] = _text(raw.get("date_stop"))

    row.update(compute_metrics(raw))
    row.update(extract_conversions(raw.get("actions"), custom_conversions or {}, conversion_match))
    row.update(_creative(raw))
    return row


def missing_key_fields(row: Mapping[str, Any], level: LevelSpec) -> list:
    """Conflict key fields that are None in a normalized row."""
    return [name for name in level.conflict_key if row.get(name) is None]
