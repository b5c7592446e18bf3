"""
Canonical transaction state machine.

    pending ──► authorized ──► completed ──► partially_refunded ──► refunded
       │            │              └────────────────────────────────────┘
       └────────────┴──► failed / cancelled / expired

``completed → refunded/partially_refunded`` are the only moves out of a
terminal state. Provider callbacks can arrive out of order, so every status
write goes through ``can_transition``; anything else would let a late
"failed" callback overwrite a completed payment.

The one write outside this table is a ledger correction: when a refund the
provider accepted later fails, the engine recomputes the original payment from
its remaining refund rows.
"""

from typing import Union

from paygate.models.enums import TransactionStatus

S = TransactionStatus

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.PENDING: frozenset({S.AUTHORIZED, S.COMPLETED, S.FAILED, S.CANCELLED, S.EXPIRED}),
    S.AUTHORIZED: frozenset({S.COMPLETED, S.FAILED, S.CANCELLED, S.EXPIRED}),
    S.COMPLETED: frozenset({S.PARTIALLY_REFUNDED, S.REFUNDED}),
    S.PARTIALLY_REFUNDED: frozenset({S.PARTIALLY_REFUNDED, S.REFUNDED}),
    S.REFUNDED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
    S.EXPIRED: frozenset(),
}

# Local statuses that a status check answers from the ledger without polling
NO_POLL_STATUSES = frozenset({S.COMPLETED, S.FAILED, S.REFUNDED, S.PARTIALLY_REFUNDED})

REFUNDABLE_STATUSES = frozenset({S.COMPLETED, S.PARTIALLY_REFUNDED})


def can_transition(
    current: Union[str, TransactionStatus],
    new: Union[str, TransactionStatus],
) -> bool:
    """Whether ``current → new`` is legal. Staying in the same status always is."""
    current, new = TransactionStatus(current), TransactionStatus(new)
    if current == new:
        return True
    return new in ALLOWED_TRANSITIONS[current]
