"""
Customer-facing message templates.

Plain language only: gateway error codes and internal states never appear
in anything sent to an account holder.
"""

import html
from typing import Any, Dict, Tuple

# template_id -> (subject, body)
TEMPLATES: Dict[str, Tuple[str, str]] = {
    "payment_failed": (
        "We couldn't process your {plan} payment",
        "Your payment of {amount} {currency} for {plan} didn't go through. "
        "We'll try again on {next_retry_date}. Your service continues in the meantime.",
    ),
    "payment_recovered": (
        "Payment received, thank you",
        "Your payment of {amount} {currency} for {plan} went through. "
        "Your subscription is active until {period_end}.",
    ),
    # Soft-decline campaign
    "dunning_reminder": (
        "Reminder: payment due for {plan}",
        "We're still waiting on your {plan} payment of {amount} {currency}. "
        "Please make sure your payment method has enough funds.",
    ),
    "dunning_warning": (
        "Action needed: {plan} payment outstanding",
        "Your {plan} payment is still outstanding. "
        "Please update your payment details to avoid interruption.",
    ),
    "dunning_final_notice": (
        "Final notice: {plan} will be suspended soon",
        "This is the final notice for your {plan} payment. "
        "Without payment your subscription will be cancelled in a few days.",
    ),
    "dunning_suspension_notice": (
        "Your {plan} subscription has been cancelled",
        "We were unable to collect payment for {plan}, so your subscription has been cancelled. "
        "Contact support to reactivate.",
    ),
    # Hard-decline campaign
    "card_update_reminder": (
        "Please update your card for {plan}",
        "The card on file for {plan} can no longer be charged. "
        "Please add a new payment method to keep your subscription.",
    ),
    "card_update_warning": (
        "Action needed: card update for {plan}",
        "We still need a new payment method for {plan}.",
    ),
    "card_update_final_notice": (
        "Final notice: update your card for {plan}",
        "Your {plan} subscription will be cancelled unless a new payment method is added.",
    ),
    "card_update_suspension_notice": (
        "Your {plan} subscription has been cancelled",
        "We could not charge a valid payment method for {plan}, so your subscription has been cancelled. "
        "Contact support to reactivate.",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render(template_id: str, context: Dict[str, Any] | None = None) -> Tuple[str, str]:
    """Return (subject, body). Raises KeyError for unknown templates."""
    subject, body = TEMPLATES[template_id]
    values = _SafeDict({k: html.escape(str(v)) for k, v in (context or {}).items()})
    return subject.format_map(values), body.format_map(values)
