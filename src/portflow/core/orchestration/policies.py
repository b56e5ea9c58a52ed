from __future__ import annotations

from dataclasses import dataclass

BOOKING_CREATE = "booking_create"
BOOKING_STATUS = "booking_status"
BOOKING_LIST = "booking_list"
BOOKING_UPDATE = "booking_update"
BOOKING_CANCEL = "booking_cancel"
BOOKING_APPROVE = "booking_approve"
BOOKING_REJECT = "booking_reject"
SLOT_QUERY = "slot_query"
CAPACITY_QUERY = "capacity_query"
TERMINAL_QUERY = "terminal_query"
PEAK_HOURS_QUERY = "peak_hours_query"
GENERAL_HELP = "general_help"
OUT_OF_SCOPE = "out_of_scope"

CATEGORIES: tuple[str, ...] = (
    BOOKING_CREATE,
    BOOKING_STATUS,
    BOOKING_LIST,
    BOOKING_UPDATE,
    BOOKING_CANCEL,
    BOOKING_APPROVE,
    BOOKING_REJECT,
    SLOT_QUERY,
    CAPACITY_QUERY,
    TERMINAL_QUERY,
    PEAK_HOURS_QUERY,
    GENERAL_HELP,
    OUT_OF_SCOPE,
)

BOOKING = "booking"
SLOT_AVAILABILITY = "slot_availability"
NONE = "none"
FORBIDDEN = "forbidden"
CLARIFICATION_NEEDED = "clarification_needed"

CATEGORY_CAPABILITY: dict[str, str] = {
    BOOKING_CREATE: BOOKING,
    BOOKING_STATUS: BOOKING,
    BOOKING_LIST: BOOKING,
    BOOKING_UPDATE: BOOKING,
    BOOKING_CANCEL: BOOKING,
    BOOKING_APPROVE: BOOKING,
    BOOKING_REJECT: BOOKING,
    SLOT_QUERY: SLOT_AVAILABILITY,
    CAPACITY_QUERY: SLOT_AVAILABILITY,
    TERMINAL_QUERY: SLOT_AVAILABILITY,
    PEAK_HOURS_QUERY: SLOT_AVAILABILITY,
    GENERAL_HELP: NONE,
    OUT_OF_SCOPE: NONE,
}

ROLES: tuple[str, ...] = ("ADMIN", "OPERATOR", "CARRIER", "DRIVER")

_ALWAYS = {GENERAL_HELP, OUT_OF_SCOPE}
_AVAILABILITY = {SLOT_QUERY, CAPACITY_QUERY, TERMINAL_QUERY, PEAK_HOURS_QUERY}

ROLE_CATEGORIES: dict[str, frozenset[str]] = {
    "CARRIER": frozenset(
        {BOOKING_CREATE, BOOKING_STATUS, BOOKING_LIST, BOOKING_UPDATE, BOOKING_CANCEL} | _AVAILABILITY | _ALWAYS
    ),
    "OPERATOR": frozenset({BOOKING_STATUS, BOOKING_LIST, BOOKING_APPROVE, BOOKING_REJECT} | _AVAILABILITY | _ALWAYS),
    "ADMIN": frozenset({BOOKING_STATUS, BOOKING_LIST, BOOKING_APPROVE, BOOKING_REJECT} | _AVAILABILITY | _ALWAYS),
    "DRIVER": frozenset({BOOKING_STATUS, BOOKING_LIST} | _ALWAYS),
}

ACTION_LABELS: dict[str, str] = {
    BOOKING_CREATE: "create a booking",
    BOOKING_STATUS: "check a booking status",
    BOOKING_LIST: "list bookings",
    BOOKING_UPDATE: "modify a booking",
    BOOKING_CANCEL: "cancel a booking",
    BOOKING_APPROVE: "approve a booking",
    BOOKING_REJECT: "reject a booking",
    SLOT_QUERY: "check slot availability",
    CAPACITY_QUERY: "view capacity analysis",
    TERMINAL_QUERY: "view terminal information",
    PEAK_HOURS_QUERY: "view peak hour analysis",
    GENERAL_HELP: "get help",
    OUT_OF_SCOPE: "ask about unrelated topics",
}


@dataclass(frozen=True)
class RoleDecision:
    allowed: bool
    reason: str


def normalize_role(role: str) -> str:
    return (role or "").strip().upper()


def is_known_role(role: str) -> bool:
    return normalize_role(role) in ROLE_CATEGORIES


def allowed_categories(role: str) -> frozenset[str]:
    return ROLE_CATEGORIES.get(normalize_role(role), frozenset(_ALWAYS))


def evaluate(role: str, category: str) -> RoleDecision:
    if category in allowed_categories(role):
        return RoleDecision(allowed=True, reason="Allowed")
    return RoleDecision(allowed=False, reason=f"{normalize_role(role) or 'UNKNOWN'} may not {ACTION_LABELS.get(category, category)}")


def capability_for(category: str) -> str:
    return CATEGORY_CAPABILITY.get(category, CLARIFICATION_NEEDED)


BOOKING_TOOLS: tuple[str, ...] = (
    "getBooking",
    "listBookings",
    "createBooking",
    "updateBooking",
    "cancelBooking",
    "approveBooking",
    "rejectBooking",
)

SLOT_TOOLS: tuple[str, ...] = (
    "getAllTerminals",
    "getTerminalById",
    "getSlotAvailability",
    "getCapacityAnalysis",
    "getPeakHourAnalysis",
)

CAPABILITY_TOOLS: dict[str, tuple[str, ...]] = {
    BOOKING: BOOKING_TOOLS,
    SLOT_AVAILABILITY: SLOT_TOOLS,
}
