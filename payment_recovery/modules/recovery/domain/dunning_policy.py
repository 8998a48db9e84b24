"""
Dunning Campaign Engine

Pure step evaluator for the escalating communication sequence.

Default cadence (offsets from campaign start):
    step 1  day 1   reminder           email
    step 2  day 5   warning            email
    step 3  day 10  final notice       email + sms
    step 4  day 13  suspension notice  email + sms
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from payment_recovery.models.dunning_campaign import CampaignType


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class DunningResolution(str, Enum):
    RECOVERED = "recovered"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class DunningStage:
    gap_days: int  # Days since the previous step (campaign start for step 1)
    template: str
    channels: Tuple[Channel, ...]


DUNNING_STAGES = (
    DunningStage(1, "reminder", (Channel.EMAIL,)),
    DunningStage(4, "warning", (Channel.EMAIL,)),
    DunningStage(5, "final_notice", (Channel.EMAIL, Channel.SMS)),
    DunningStage(3, "suspension_notice", (Channel.EMAIL, Channel.SMS)),
)
DEFAULT_TOTAL_STEPS = len(DUNNING_STAGES)
SUSPENSION_TEMPLATE = "suspension_notice"

# Hard declines ask the customer for a new card instead of a retry
TEMPLATE_PREFIXES = {
    CampaignType.PAYMENT_FAILED.value: "dunning",
    CampaignType.CARD_UPDATE_REQUIRED.value: "card_update",
}


@dataclass(frozen=True)
class Communication:
    template_id: str
    channels: Tuple[Channel, ...]


@dataclass(frozen=True)
class DunningDecision:
    advance: bool
    communication: Optional[Communication] = None
    resolve: Optional[DunningResolution] = None
    wait_days: Optional[float] = None
    next_gap_days: Optional[int] = None


def template_id_for(campaign_type: str, template: str) -> str:
    prefix = TEMPLATE_PREFIXES.get(str(getattr(campaign_type, "value", campaign_type)))
    if prefix is None:
        raise ValueError(f"Unknown campaign type: {campaign_type}")
    return f"{prefix}_{template}"


def stage_gap_days(step: int) -> int:
    return DUNNING_STAGES[step - 1].gap_days


def evaluate_step(
    current_step: int,
    total_steps: int,
    days_since_last_step: float,
    response_received: bool,
    campaign_type: str = CampaignType.PAYMENT_FAILED.value,
) -> DunningDecision:
    """
    Decide what to do with step `current_step` of a campaign.

    Returns:
        - resolve=RECOVERED, no communication, when the customer responded
        - advance=False with the remaining wait when the step is not due yet
        - the step's communication, plus resolve=ABANDONED on the last step
    """
    if total_steps < 1 or total_steps > len(DUNNING_STAGES):
        raise ValueError(f"total_steps must be between 1 and {len(DUNNING_STAGES)}, got {total_steps}")
    if current_step < 1 or current_step > total_steps:
        raise ValueError(f"current_step must be between 1 and {total_steps}, got {current_step}")
    if days_since_last_step < 0:
        raise ValueError("days_since_last_step cannot be negative")

    if response_received:
        return DunningDecision(advance=False, resolve=DunningResolution.RECOVERED)

    stage = DUNNING_STAGES[current_step - 1]
    if days_since_last_step < stage.gap_days:
        return DunningDecision(advance=False, wait_days=stage.gap_days - days_since_last_step)

    is_final = current_step == total_steps
    template = SUSPENSION_TEMPLATE if is_final else stage.template
    communication = Communication(
        template_id=template_id_for(campaign_type, template),
        channels=stage.channels,
    )

    if is_final:
        return DunningDecision(advance=True, communication=communication, resolve=DunningResolution.ABANDONED)

    return DunningDecision(
        advance=True,
        communication=communication,
        next_gap_days=stage_gap_days(current_step + 1),
    )
