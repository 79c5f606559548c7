from vikingsync.services.fetchers.base import ReadPlan, canonical_id, read_through
from vikingsync.services.fetchers.events import (
    detect_shared_events,
    fetch_event_attendance,
    fetch_event_sharing_status,
    fetch_event_summary,
    fetch_events,
    fetch_shared_attendance,
    load_events_from_cache,
    shared_event_metadata,
)
from vikingsync.services.fetchers.flexi import (
    discover_section_movers_records,
    fetch_consolidated_flexi_record,
    fetch_flexi_data,
    fetch_flexi_list,
    fetch_flexi_structure,
    fetch_viking_event_data,
    fetch_viking_event_data_for_events,
    fetch_viking_section_movers_data,
    validate_section_movers_records,
)
from vikingsync.services.fetchers.reference import (
    current_term_id,
    extract_user_info,
    fetch_members,
    fetch_most_recent_term_id,
    fetch_startup_data,
    fetch_terms,
    fetch_user_roles,
    most_recent_term,
)

__all__ = [
    "ReadPlan",
    "canonical_id",
    "current_term_id",
    "detect_shared_events",
    "discover_section_movers_records",
    "extract_user_info",
    "fetch_consolidated_flexi_record",
    "fetch_event_attendance",
    "fetch_event_sharing_status",
    "fetch_event_summary",
    "fetch_events",
    "fetch_flexi_data",
    "fetch_flexi_list",
    "fetch_flexi_structure",
    "fetch_members",
    "fetch_most_recent_term_id",
    "fetch_shared_attendance",
    "fetch_startup_data",
    "fetch_terms",
    "fetch_user_roles",
    "fetch_viking_event_data",
    "fetch_viking_event_data_for_events",
    "fetch_viking_section_movers_data",
    "load_events_from_cache",
    "most_recent_term",
    "read_through",
    "shared_event_metadata",
    "validate_section_movers_records",
]
