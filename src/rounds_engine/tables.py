"""
Key schemas of every table the repository reads and writes.

``create_tables.py`` turns these into ``create_table`` calls; the repository
relies on the same attribute and index names.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from .config import GSI_EVENT_NAME, GSI_GROUP_NAME, GSI_WEEK_NAME, TableNames

# (hash key, range key or None, [(index name, hash key, range key or None)])
TableLayout = Tuple[str, Optional[str], List[Tuple[str, str, Optional[str]]]]

LAYOUTS: Dict[str, TableLayout] = {
    "users": ("user_pk", None, []),
    "events": ("event_pk", None, []),
    "bookings": ("booking_pk", None, [(GSI_EVENT_NAME, "event_id", "created_at")]),
    "groups": ("group_pk", None, [(GSI_WEEK_NAME, "gsi1pk", None)]),
    "members": ("user_pk", "week_sk", [(GSI_WEEK_NAME, "gsi1pk", None), (GSI_GROUP_NAME, "gsi2pk", None)]),
    "matches": ("pair_pk", None, []),
    "conversations": ("group_pk", None, []),
    "waitlist": ("user_pk", "week_sk", []),
}


def _key_schema(hash_key: str, range_key: Optional[str]) -> List[Dict[str, str]]:
    schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
    if range_key:
        schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
    return schema


def table_definition(logical: str, table_name: str) -> Dict[str, Any]:
    """Keyword arguments for ``client.create_table`` (on-demand billing)."""
    hash_key, range_key, indexes = LAYOUTS[logical]

    attrs = [hash_key] + ([range_key] if range_key else [])
    for _, ih, ir in indexes:
        attrs.append(ih)
        if ir:
            attrs.append(ir)

    definition: Dict[str, Any] = {
        "TableName": table_name,
        "KeySchema": _key_schema(hash_key, range_key),
        "AttributeDefinitions": [
            {"AttributeName": a, "AttributeType": "S"} for a in dict.fromkeys(attrs)
        ],
        "BillingMode": "PAY_PER_REQUEST",
    }
    if indexes:
        definition["GlobalSecondaryIndexes"] = [
            {
                "IndexName": name,
                "KeySchema": _key_schema(ih, ir),
                "Projection": {"ProjectionType": "ALL"},
            }
            for name, ih, ir in indexes
        ]
    return definition


def all_definitions(tables: TableNames) -> List[Dict[str, Any]]:
    return [table_definition(logical, getattr(tables, logical)) for logical in LAYOUTS]
