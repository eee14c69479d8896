"""Environment phases, the transition table, and status conditions.

  Pending ─► Creating ─► Ready ─► Updating ─► Ready
     │          │          │         │
     └──────────┴──► Failed ◄────────┘
                        │
                        └─► Creating | Updating   (spec generation changed)

Every non-Deleting phase may move to Deleting; Deleting only ends with the
record being removed. There is no Pending → Ready edge.
"""

from datetime import datetime
from enum import Enum

from previewd.errors import InvalidTransitionError


class Phase(str, Enum):
    PENDING = "Pending"
    CREATING = "Creating"
    READY = "Ready"
    UPDATING = "Updating"
    DELETING = "Deleting"
    FAILED = "Failed"


_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PENDING: frozenset({Phase.CREATING, Phase.FAILED, Phase.DELETING}),
    Phase.CREATING: frozenset({Phase.READY, Phase.FAILED, Phase.DELETING}),
    Phase.READY: frozenset({Phase.UPDATING, Phase.FAILED, Phase.DELETING}),
    Phase.UPDATING: frozenset({Phase.READY, Phase.FAILED, Phase.DELETING}),
    Phase.FAILED: frozenset({Phase.CREATING, Phase.UPDATING, Phase.DELETING}),
    Phase.DELETING: frozenset(),
}

ACTIVE_PHASES = frozenset({Phase.CREATING, Phase.UPDATING})


def can_transition(current: Phase, target: Phase) -> bool:
    return current == target or target in _TRANSITIONS[current]


def transition(current: Phase, target: Phase) -> Phase:
    if not can_transition(current, target):
        raise InvalidTransitionError(f"illegal phase transition {current.value} -> {target.value}")
    return target


# ── conditions ────────────────────────────────────────────────────────────

CONDITION_READY = "Ready"
CONDITION_PROGRESSING = "Progressing"
CONDITION_DEGRADED = "Degraded"


def set_condition(
    conditions: list[dict] | None,
    type_: str,
    status: bool,
    reason: str,
    message: str,
    now: datetime,
) -> list[dict]:
    """Return a new condition list with type_ set.

    lastTransitionTime only moves when the status value flips.
    """
    value = "True" if status else "False"
    updated: list[dict] = []
    found = False
    for cond in conditions or []:
        if cond.get("type") != type_:
            updated.append(dict(cond))
            continue
        found = True
        flipped = cond.get("status") != value
        updated.append({
            "type": type_,
            "status": value,
            "reason": reason,
            "message": message,
            "lastTransitionTime": now.isoformat() if flipped else cond.get("lastTransitionTime"),
        })
    if not found:
        updated.append({
            "type": type_,
            "status": value,
            "reason": reason,
            "message": message,
            "lastTransitionTime": now.isoformat(),
        })
    return updated


def get_condition(conditions: list[dict] | None, type_: str) -> dict | None:
    for cond in conditions or []:
        if cond.get("type") == type_:
            return cond
    return None


def phase_conditions(
    conditions: list[dict] | None,
    phase: Phase,
    now: datetime,
    reason: str = "",
    message: str = "",
    degraded: bool = False,
) -> list[dict]:
    """Derive Ready / Progressing / Degraded from the phase.

    reason/message describe the current tick; degraded marks a transient
    error or an unhealthy service without leaving the phase.
    """
    degraded = degraded or phase is Phase.FAILED
    reason = reason or phase.value

    ready = phase is Phase.READY
    progressing = phase in (Phase.PENDING, Phase.CREATING, Phase.UPDATING, Phase.DELETING)

    out = set_condition(
        conditions, CONDITION_READY, ready,
        "AllServicesReady" if ready else reason, message, now,
    )
    out = set_condition(
        out, CONDITION_PROGRESSING, progressing,
        reason if progressing else "Converged" if ready else reason, message, now,
    )
    return set_condition(
        out, CONDITION_DEGRADED, degraded,
        reason if degraded else "AsExpected", message if degraded else "", now,
    )
