"""Attendance / payment status.

One closed enumeration shared by the ledger, the user projection and
payment sessions. The only legal moves are PENDING -> PAID and
PENDING -> FAILED; terminal states never change again.
"""

import enum


class AttendanceStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"

    @property
    def is_terminal(self):
        return self in TERMINAL_STATUSES

    @property
    def holds_slot(self):
        """Pending and Paid attendances count against capacity."""
        return self in ACTIVE_STATUSES

    def can_transition_to(self, new_status):
        return new_status in VALID_TRANSITIONS[self]


ACTIVE_STATUSES = frozenset({AttendanceStatus.PENDING, AttendanceStatus.PAID})
TERMINAL_STATUSES = frozenset({AttendanceStatus.PAID, AttendanceStatus.FAILED})

VALID_TRANSITIONS = {
    AttendanceStatus.PENDING: frozenset({AttendanceStatus.PAID, AttendanceStatus.FAILED}),
    AttendanceStatus.PAID: frozenset(),
    AttendanceStatus.FAILED: frozenset(),
}

SUCCESS_RESULT_CODE = "0"


def status_for_result_code(result_code):
    """Map a Daraja ResultCode to the status it settles a payment into.

    "0" is success; every other code (1032 cancelled by user, 1037 timeout,
    1 insufficient funds, 2001 wrong PIN, ...) is a failure. None means the
    payer hasn't answered yet and returns PENDING.
    """
    if result_code is None:
        return AttendanceStatus.PENDING
    if str(result_code).strip() == SUCCESS_RESULT_CODE:
        return AttendanceStatus.PAID
    return AttendanceStatus.FAILED


def status_column(db):
    """Column type storing AttendanceStatus by value, validated on write."""
    return db.Enum(
        AttendanceStatus,
        name="attendance_status",
        native_enum=False,
        length=20,
        values_callable=lambda enum_cls: [m.value for m in enum_cls],
        validate_strings=True,
    )
