"""
Status enums and transition tables for repair requests and rental
reservations.

Each machine is a table of ``event -> (sources, targets)``. Services ask the
machine for the next state before touching the database or any provider; an
event that is not listed for the current state raises
``InvalidTransitionError``.
"""

import enum

from errors import InvalidTransitionError


class RepairStatus(str, enum.Enum):
    OPEN = "open"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    ACCEPTED_PENDING_DEPOSIT = "accepted_pending_deposit"
    DEPOSIT_PAID = "deposit_paid"
    FINAL_PRICE_PENDING_USER = "final_price_pending_user"
    REJECTED = "rejected"
    COMPLETED = "completed"


class CompletionStatus(str, enum.Enum):
    PENDING = "pending"
    PROVIDER_COMPLETED = "provider_completed"
    USER_CONFIRMED = "user_confirmed"


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    DOCUMENTS_REQUESTED = "documents_requested"
    ACCEPTED_PENDING_VERIFICATION = "accepted_pending_verification"
    ACCEPTED = "accepted"
    PAID = "paid"
    REJECTED = "rejected"


class StateMachine:
    """A closed transition table over one status enum."""

    def __init__(self, name, states, transitions):
        self.name = name
        self.states = states
        self.transitions = {}
        for event, (sources, targets) in transitions.items():
            self.transitions[event] = (
                frozenset(states(s) for s in sources),
                tuple(states(t) for t in targets),
            )

    def _coerce(self, state):
        return state if isinstance(state, self.states) else self.states(state)

    def can(self, current, event):
        sources, _ = self.transitions[event]
        return self._coerce(current) in sources

    def advance(self, current, event, target=None):
        """Return the state ``event`` leads to from ``current``.

        Events with more than one possible target need ``target`` to pick
        one; it must be listed in the table.
        """
        if event not in self.transitions:
            raise KeyError("Unknown {} event: {}".format(self.name, event))
        current = self._coerce(current)
        sources, targets = self.transitions[event]
        if current not in sources:
            raise InvalidTransitionError(self.name, current.value, event)
        if target is None:
            if len(targets) != 1:
                raise ValueError("Event {} needs an explicit target".format(event))
            return targets[0]
        target = self._coerce(target)
        if target not in targets:
            raise InvalidTransitionError(self.name, current.value, event)
        return target

    def terminal_states(self):
        reachable_from = set()
        for sources, _ in self.transitions.values():
            reachable_from |= sources
        return {s for s in self.states if s not in reachable_from}


# States in which the provider may still be doing the work.
PRE_COMPLETION = (
    RepairStatus.ACCEPTED,
    RepairStatus.ACCEPTED_PENDING_DEPOSIT,
    RepairStatus.DEPOSIT_PAID,
    RepairStatus.FINAL_PRICE_PENDING_USER,
)

REPAIR_STATUS = StateMachine("repair request", RepairStatus, {
    "quote": (("open", "quoted"), ("quoted",)),
    "accept": (("quoted",), ("accepted",)),
    "accept_final_price": (("final_price_pending_user",), ("accepted", "deposit_paid")),
    "reject": (("quoted", "accepted", "final_price_pending_user"), ("rejected",)),
    "start_deposit": (("accepted", "accepted_pending_deposit"), ("accepted_pending_deposit",)),
    "save_payment_method": (("accepted_pending_deposit", "deposit_paid"), ("deposit_paid",)),
    "revise_price": (
        ("quoted", "accepted", "accepted_pending_deposit", "deposit_paid", "final_price_pending_user"),
        ("final_price_pending_user",),
    ),
    "confirm_completion": (
        ("accepted_pending_deposit", "deposit_paid"),
        ("completed",),
    ),
})

REPAIR_COMPLETION = StateMachine("repair job", CompletionStatus, {
    "mark_completed": (("pending", "provider_completed"), ("provider_completed",)),
    "confirm_completion": (("provider_completed",), ("user_confirmed",)),
})

RESERVATION_STATUS = StateMachine("reservation", ReservationStatus, {
    "submit_documents": (("documents_requested",), ("pending",)),
    "accept": (("pending",), ("accepted_pending_verification", "accepted")),
    "request_documents": (("pending",), ("documents_requested",)),
    "verify_identity": (("accepted_pending_verification",), ("accepted",)),
    "start_checkout": (("accepted",), ("accepted",)),
    "mark_paid": (("accepted",), ("paid",)),
    "reject": (
        ("pending", "documents_requested", "accepted_pending_verification", "accepted"),
        ("rejected",),
    ),
})

# Reservation statuses that hold the property's dates.
BLOCKING_RESERVATION_STATUSES = (
    ReservationStatus.PENDING,
    ReservationStatus.DOCUMENTS_REQUESTED,
    ReservationStatus.ACCEPTED_PENDING_VERIFICATION,
    ReservationStatus.ACCEPTED,
    ReservationStatus.PAID,
)
