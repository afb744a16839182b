import enum


class MovementKind(str, enum.Enum):
    inbound = "in"
    outbound = "out"
    adjustment = "adjustment"
    reserve = "reserve"
    unreserve = "unreserve"


class POStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    partially_received = "partially_received"
    received = "received"
    cancelled = "cancelled"


# Closed state machine: any edge not listed here is rejected.
VALID_TRANSITIONS: dict[POStatus, frozenset[POStatus]] = {
    POStatus.pending: frozenset({POStatus.confirmed, POStatus.cancelled}),
    POStatus.confirmed: frozenset(
        {POStatus.received, POStatus.partially_received, POStatus.cancelled}
    ),
    POStatus.partially_received: frozenset({POStatus.received, POStatus.cancelled}),
    POStatus.received: frozenset(),
    POStatus.cancelled: frozenset(),
}

MODIFIABLE_PO_STATUSES = frozenset({POStatus.pending, POStatus.confirmed})
RECEIVABLE_PO_STATUSES = frozenset({POStatus.confirmed, POStatus.partially_received})
