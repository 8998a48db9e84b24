"""
Tests for the Dunning Campaign Engine (pure step evaluation).
"""

import pytest

from payment_recovery.models.dunning_campaign import CampaignType
from payment_recovery.modules.recovery.domain.dunning_policy import (
    Channel,
    DunningResolution,
    evaluate_step,
    template_id_for,
)


def test_first_step_waits_one_day():
    decision = evaluate_step(1, 4, days_since_last_step=0.5, response_received=False)
    assert decision.advance is False
    assert decision.communication is None
    assert decision.wait_days == pytest.approx(0.5)


@pytest.mark.parametrize(
    "step,gap,template,channels,next_gap",
    [
        (1, 1, "dunning_reminder", (Channel.EMAIL,), 4),
        (2, 4, "dunning_warning", (Channel.EMAIL,), 5),
        (3, 5, "dunning_final_notice", (Channel.EMAIL, Channel.SMS), 3),
    ],
)
def test_due_steps_send_their_communication(step, gap, template, channels, next_gap):
    decision = evaluate_step(step, 4, days_since_last_step=gap, response_received=False)
    assert decision.advance is True
    assert decision.resolve is None
    assert decision.communication.template_id == template
    assert decision.communication.channels == channels
    assert decision.next_gap_days == next_gap


def test_final_step_sends_suspension_and_abandons():
    decision = evaluate_step(4, 4, days_since_last_step=3, response_received=False)
    assert decision.advance is True
    assert decision.resolve == DunningResolution.ABANDONED
    assert decision.communication.template_id == "dunning_suspension_notice"
    assert Channel.SMS in decision.communication.channels


def test_shortened_campaign_uses_suspension_template_on_last_step():
    decision = evaluate_step(2, 2, days_since_last_step=4, response_received=False)
    assert decision.resolve == DunningResolution.ABANDONED
    assert decision.communication.template_id == "dunning_suspension_notice"
    assert decision.communication.channels == (Channel.EMAIL,)


@pytest.mark.parametrize("step", [1, 2, 3, 4])
def test_response_resolves_recovered_without_communication(step):
    decision = evaluate_step(step, 4, days_since_last_step=0, response_received=True)
    assert decision.resolve == DunningResolution.RECOVERED
    assert decision.communication is None
    assert decision.advance is False


def test_card_update_campaign_templates():
    decision = evaluate_step(
        1, 4, days_since_last_step=1, response_received=False,
        campaign_type=CampaignType.CARD_UPDATE_REQUIRED.value,
    )
    assert decision.communication.template_id == "card_update_reminder"


@pytest.mark.parametrize(
    "step,total,days",
    [(0, 4, 1), (5, 4, 1), (1, 5, 1), (1, 0, 1), (1, 4, -1)],
)
def test_invalid_inputs_rejected(step, total, days):
    with pytest.raises(ValueError):
        evaluate_step(step, total, days_since_last_step=days, response_received=False)


def test_unknown_campaign_type():
    with pytest.raises(ValueError, match="Unknown campaign type"):
        template_id_for("bogus", "reminder")
