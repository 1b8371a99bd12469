"""
Recipient normalization for outreach actions.

Campaign and cart-recovery payloads address a customer by email or phone.
The normalized form keys both the pending-approval dedup indexes and the
per-recipient frequency caps.
"""

import re

from change_governor.actions.types import RECIPIENT_ACTION_TYPES, ActionType


def normalize_email(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    return value.strip().lower()


def normalize_phone(value: str | None) -> str | None:
    if not value:
        return None
    digits = re.sub(r"[^\d+]", "", value)
    return digits or None


def extract_recipient(
    action_type: ActionType,
    payload: object,
) -> tuple[str | None, str | None, str | None]:
    """
    Recipient dedup fields for an outreach payload.

    The channel defaults to 'email' when an address is present and 'sms'
    otherwise. Catalog action types have no recipient.

    Returns:
        (recipient_email, recipient_phone, channel)
    """
    if action_type not in RECIPIENT_ACTION_TYPES:
        return None, None, None

    email = normalize_email(getattr(payload, "recipient_email", None))
    phone = normalize_phone(getattr(payload, "recipient_phone", None))
    if email is None and phone is None:
        return None, None, None

    channel = getattr(payload, "channel", None) or ("email" if email else "sms")
    return email, phone, channel.lower()


def recipient_key(action_type: ActionType, payload: object) -> tuple[str | None, str | None]:
    """
    The (recipient, channel) a message is counted against.

    Email channels count by address, everything else by phone; falls back
    to whichever identifier is present.
    """
    email, phone, channel = extract_recipient(action_type, payload)
    if channel is None:
        return None, None
    if channel == "email":
        return email or phone, channel
    return phone or email, channel
