from __future__ import annotations

import json
from typing import Any

from vikingsync.services.flexi_schema import VIKING_EVENT_FIELDS


VIKING_FIELD_IDS = {name: f"f_{index}" for index, name in enumerate(VIKING_EVENT_FIELDS, start=1)}


def viking_structure(extraid: str = "9", name: str = "Viking Event Mgmt", fields: dict[str, str] | None = None) -> dict[str, Any]:
    fields = VIKING_FIELD_IDS if fields is None else fields
    return {
        "extraid": extraid,
        "name": name,
        "config": json.dumps([{"id": fid, "name": field_name, "width": "150"} for field_name, fid in fields.items()]),
        "structure": [
            {"rows": [{"field": fid, "name": field_name, "width": "120px"} for field_name, fid in fields.items()]}
        ],
    }


def viking_data(*scouts: dict[str, Any]) -> dict[str, Any]:
    items = []
    for scout in scouts:
        item = {key: value for key, value in scout.items() if key not in VIKING_FIELD_IDS}
        for field_name, fid in VIKING_FIELD_IDS.items():
            if field_name in scout:
                item[fid] = scout[field_name]
        items.append(item)
    return {"identifier": "scoutid", "items": items}
