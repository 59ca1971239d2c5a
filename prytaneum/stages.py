"""Pipeline stage definitions: ordering, exit criteria, transitions, stall detection.

Single source of truth for the fundraising workflow. Stages 1-7 are active,
the last five are terminal endpoints that may re-engage to any active stage.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal, get_args

from prytaneum.utils import days_since

Stage = Literal[
    "Not Yet Approached",
    "Initial Contact",
    "First Conversation Held",
    "Materials Shared",
    "NDA / Data Room",
    "Active Due Diligence",
    "LPA / Legal",
    "Won",
    "Committed",
    "Lost",
    "Passed",
    "Delayed",
]

STAGE_ORDER: tuple[str, ...] = get_args(Stage)

TERMINAL_STAGES = frozenset({"Won", "Committed", "Lost", "Passed", "Delayed"})
ACTIVE_STAGES: tuple[str, ...] = tuple(s for s in STAGE_ORDER if s not in TERMINAL_STAGES)

DEFAULT_STALL_DAYS = 30


@dataclass(frozen=True)
class ExitCriterion:
    id: str
    label: str
    description: str


@dataclass(frozen=True)
class StageDefinition:
    label: str
    order: int
    exit_criteria: tuple[ExitCriterion, ...] = ()
    allowed_transitions: tuple[str, ...] = ACTIVE_STAGES


STAGE_DEFINITIONS: dict[str, StageDefinition] = {
    "Not Yet Approached": StageDefinition(
        "Not Yet Approached", 1,
        (
            ExitCriterion("outreach_planned", "Outreach strategy defined",
                          "Clear plan for initial contact approach"),
            ExitCriterion("contact_info_verified", "Contact information verified",
                          "Email, phone, or LinkedIn contact confirmed"),
        ),
        ("Initial Contact",),
    ),
    "Initial Contact": StageDefinition(
        "Initial Contact", 2,
        (
            ExitCriterion("first_outreach_completed", "First outreach completed",
                          "Email sent, call made, or LinkedIn message delivered"),
            ExitCriterion("contact_acknowledged", "Contact acknowledged receipt",
                          "LP confirmed they received our outreach"),
        ),
        ("First Conversation Held", "Lost", "Passed"),
    ),
    "First Conversation Held": StageDefinition(
        "First Conversation Held", 2,
        (
            ExitCriterion("initial_call_completed", "Initial call or meeting completed",
                          "First substantive conversation with LP decision maker or gatekeeper"),
            ExitCriterion("key_contact_identified", "Key contact identified",
                          "Know who the decision maker is and how to reach them"),
        ),
        ("Materials Shared", "Lost", "Passed"),
    ),
    "Materials Shared": StageDefinition(
        "Materials Shared", 3,
        (
            ExitCriterion("pitch_deck_sent", "Pitch deck or fund materials sent",
                          "LP received fund deck, tearsheet, or investment memo"),
            ExitCriterion("lp_confirmed_receipt", "LP confirmed receipt",
                          "LP acknowledged they received and will review materials"),
        ),
        ("NDA / Data Room", "Lost", "Passed", "Delayed"),
    ),
    "NDA / Data Room": StageDefinition(
        "NDA / Data Room", 3,
        (
            ExitCriterion("nda_fully_executed", "NDA fully executed",
                          "Both parties signed NDA, all copies returned"),
            ExitCriterion("data_room_access_granted", "Data room access granted",
                          "LP has access credentials and can view due diligence materials"),
        ),
        ("Active Due Diligence", "Lost", "Passed", "Delayed"),
    ),
    "Active Due Diligence": StageDefinition(
        "Active Due Diligence", 4,
        (
            ExitCriterion("dd_process_initiated", "DD process formally initiated",
                          "LP officially began due diligence process with written confirmation"),
            ExitCriterion("dd_meetings_held", "At least 2 DD meetings held",
                          "Minimum of 2 substantive due diligence calls or meetings completed"),
        ),
        ("LPA / Legal", "Lost", "Passed", "Delayed"),
    ),
    "LPA / Legal": StageDefinition(
        "LPA / Legal", 4,
        (
            ExitCriterion("lpa_reviewed", "LPA reviewed by LP counsel",
                          "LP's legal team reviewed Limited Partnership Agreement"),
            ExitCriterion("key_terms_agreed", "Key terms agreed",
                          "No major open issues on investment amount, fees, or governance"),
        ),
        ("Won", "Committed", "Lost", "Passed", "Delayed"),
    ),
    # Terminal stages: no exit criteria, re-engagement to any active stage
    **{s: StageDefinition(s, 5) for s in ("Won", "Committed", "Lost", "Passed", "Delayed")},
}


def is_valid_stage(stage: str) -> bool:
    return stage in STAGE_DEFINITIONS


def is_terminal_stage(stage: str) -> bool:
    return stage in TERMINAL_STAGES


def get_exit_criteria(stage: str) -> tuple[ExitCriterion, ...]:
    definition = STAGE_DEFINITIONS.get(stage)
    return definition.exit_criteria if definition else ()


def get_allowed_transitions(from_stage: str) -> tuple[str, ...]:
    definition = STAGE_DEFINITIONS.get(from_stage)
    return definition.allowed_transitions if definition else ()


def is_valid_transition(from_stage: str, to_stage: str) -> bool:
    return to_stage in get_allowed_transitions(from_stage)


def compute_is_stalled(
    last_action_date: date | datetime | str | None,
    stage: str,
    threshold_days: int = DEFAULT_STALL_DAYS,
    stage_entry_date: date | datetime | str | None = None,
    now: date | None = None,
) -> bool:
    """Return True when a non-terminal investor has seen no action for *threshold_days*.

    The reference date is ``last_action_date``, falling back to
    ``stage_entry_date``. With neither date the investor is treated as newly
    created and is not stalled.
    """
    if is_terminal_stage(stage):
        return False
    elapsed = days_since(last_action_date or stage_entry_date, now)
    if elapsed is None:
        return False
    return elapsed >= threshold_days
