"""
Conversion extraction from Graph API action lists.

Insights carry conversions as a list of loosely-typed entries:

    [{"action_type": "lead", "value": "5"},
     {"action_type": "offsite_conversion.custom.1303318332892874",
      "action_target_id": "1303318332892874", "value": "2"}]

Each entry is validated into an ActionEntry and matched against a table of
external identifier -> output column. Counts for the same column are summed.
Entries matching nothing are ignored.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from insights_ingestion.errors import ConfigError
from insights_ingestion.utils.numbers import non_negative_float, non_negative_int


MATCH_MODES = ("action_target_id", "action_type", "either")

# Always extracted, matched by action_type.
STANDARD_CONVERSIONS = {
    "lead": "leads",
    "purchase": "purchases",
}

# Revenue for purchases comes from the parallel action_values list.
STANDARD_VALUES = {
    "purchase": "purchase_value",
}

RESERVED_COLUMNS = frozenset({
    "platform",
    "ad_id", "ad_name", "adset_id", "adset_name", "campaign_id", "campaign_name",
    "date_start", "date_stop",
    "impressions", "reach", "clicks", "spend", "ctr", "cpm", "cpc",
    "leads", "purchases", "purchase_value", "cpl", "cpp",
    "creative_id", "creative_name", "image_url", "thumbnail_url",
})

_COLUMN_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


@dataclass(frozen=True)
class ActionEntry:
    action_type: Optional[str]
    action_target_id: Optional[str]
    value: float

    @property
    def count(self) -> int:
        return non_negative_int(self.value)

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["ActionEntry"]:
        """Validate one raw action. Returns None for entries that are not objects."""
        if not isinstance(raw, Mapping):
            return None
        action_type = raw.get("action_type")
        target_id = raw.get("action_target_id")
        return cls(
            action_type=str(action_type) if action_type not in (None, "") else None,
            action_target_id=str(target_id) if target_id not in (None, "") else None,
            value=non_negative_float(raw.get("value")),
        )


def parse_actions(actions: Any) -> List[ActionEntry]:
    """Validate a raw action list; anything that is not a list yields no entries."""
    if not isinstance(actions, list):
        return []
    entries = []
    for raw in actions:
        entry = ActionEntry.from_raw(raw)
        if entry is not None:
            entries.append(entry)
    return entries


def _match(entry: ActionEntry, table: Mapping[str, str], match: str) -> Optional[str]:
    if match in ("action_target_id", "either") and entry.action_target_id in table:
        return table[entry.action_target_id]
    if match in ("action_type", "either") and entry.action_type in table:
        return table[entry.action_type]
    return None


def extract_conversions(
    actions: Any,
    table: Mapping[str, str],
    match: str = "action_target_id"
) -> Dict[str, int]:
    """
    Count matching actions per configured column.

    Args:
        actions: Raw action list from an insight record (may be absent)
        table: External identifier -> output column name
        match: Which entry field is compared against the table identifiers:
            action_target_id, action_type, or either (target id first)

    Returns:
        Dict with every configured column present, 0 when nothing matched
    """
    counts = {column: 0 for column in table.values()}
    for entry in parse_actions(actions):
        column = _match(entry, table, match)
        if column is not None:
            counts[column] += entry.count
    return counts


def extract_values(
    action_values: Any,
    table: Mapping[str, str],
    match: str = "action_type"
) -> Dict[str, float]:
    """Sum monetary action values per configured column."""
    totals = {column: 0.0 for column in table.values()}
    for entry in parse_actions(action_values):
        column = _match(entry, table, match)
        if column is not None:
            totals[column] += entry.value
    return totals


def extract_standard(actions: Any, action_values: Any) -> Dict[str, Any]:
    """Leads, purchases and purchase value, always present."""
    result: Dict[str, Any] = extract_conversions(actions, STANDARD_CONVERSIONS, match="action_type")
    result.update(extract_values(action_values, STANDARD_VALUES, match="action_type"))
    return result


def validate_conversion_table(table: Any) -> None:
    """
    Check a custom conversion table before it is used as output columns.

    Raises:
        ConfigError: If the table is not a mapping, an identifier is empty, or a
            column name is not a safe identifier or shadows a standard column
    """
    if not isinstance(table, Mapping):
        raise ConfigError("Custom conversions must be a mapping of identifier -> column name")
    for identifier, column in table.items():
        if not str(identifier).strip():
            raise ConfigError("Custom conversion identifiers must not be empty")
        if not isinstance(column, str) or not _COLUMN_RE.match(column):
            raise ConfigError(
                f"Invalid column name {column!r} for custom conversion {identifier}: "
                "use lowercase letters, digits and underscores"
            )
        if column in RESERVED_COLUMNS:
            raise ConfigError(f"Custom conversion column '{column}' collides with a standard column")
