"""
Reporting level definitions.

The Graph API insights endpoint reports at ad, ad set or campaign level.
Each level differs only in the fields it selects, the entity it is keyed
on and the table it lands in, so the pipeline is parameterized by one of
these specs instead of having a handler per level.
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

from insights_ingestion.errors import ConfigError


METRIC_FIELDS = [
    "date_start",
    "date_stop",
    "impressions",
    "reach",
    "clicks",
    "ctr",
    "spend",
    "actions",
    "action_values",
]


@dataclass(frozen=True)
class LevelSpec:
    name: str
    id_field: str
    name_field: str
    parent_fields: Tuple[str, ...]
    table: str
    label: str
    extra_fields: Tuple[str, ...] = ()

    @property
    def conflict_key(self) -> List[str]:
        """Composite natural key: one stored row per entity per date range."""
        return [self.id_field, "date_start", "date_stop"]

    @property
    def identity_fields(self) -> List[str]:
        return [self.id_field, self.name_field, *self.parent_fields]

    def fields(self) -> List[str]:
        """Field selection for the insights request."""
        return [*self.identity_fields, *METRIC_FIELDS, *self.extra_fields]


LEVELS: Dict[str, LevelSpec] = {
    "ad": LevelSpec(
        name="ad",
        id_field="ad_id",
        name_field="ad_name",
        parent_fields=("adset_id", "campaign_id"),
        table="ad_insights",
        label="ad",
        extra_fields=("ad_creative{id,name,image_url,thumbnail_url}",),
    ),
    "adset": LevelSpec(
        name="adset",
        id_field="adset_id",
        name_field="adset_name",
        parent_fields=("campaign_id",),
        table="adset_data",
        label="ad set",
    ),
    "campaign": LevelSpec(
        name="campaign",
        id_field="campaign_id",
        name_field="campaign_name",
        parent_fields=(),
        table="campaign_data",
        label="campaign",
    ),
}


def get_level(name: str) -> LevelSpec:
    """
    Look up a reporting level by name.

    Raises:
        ConfigError: If the level is not one of ad, adset, campaign
    """
    try:
        return LEVELS[name]
    except KeyError:
        raise ConfigError(
            f"Unknown reporting level '{name}'. Expected one of: {', '.join(LEVELS)}"
        ) from None
