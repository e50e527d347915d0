"""Shared validation utilities"""

import copy
import re
from datetime import date, datetime, time
from typing import Optional

TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


def normalize_time(value: Optional[str]) -> str:
    """
    Validate an HH:MM time string and zero pad it.

    Args:
        value: Time string such as "9:00" or "09:00"

    Returns:
        Zero padded "HH:MM" string, safe for lexical comparison

    Raises:
        ValueError: If the value is not a valid 24h time
    """
    if not value or not isinstance(value, str):
        raise ValueError("Time is required in HH:MM format")

    match = TIME_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time '{value}'. Use HH:MM")

    return f"{int(match.group(1)):02d}:{match.group(2)}"


def parse_time(value: str) -> time:
    hours, minutes = normalize_time(value).split(":")
    return time(int(hours), int(minutes))


def minutes_between(start: str, end: str) -> int:
    """Minutes from start to end, both HH:MM on the same day"""
    start_t, end_t = parse_time(start), parse_time(end)
    return (end_t.hour * 60 + end_t.minute) - (start_t.hour * 60 + start_t.minute)


def combine(day: date, hhmm: str) -> datetime:
    return datetime.combine(day, parse_time(hhmm))


def to_local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes become naive server local time, the form stored and compared"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def is_valid_card_number(card_number: Optional[str]) -> bool:
    """
    Validate a card number with the Luhn checksum.

    Spaces and dashes are ignored. Numbers must have 13-19 digits.
    """
    if not card_number or not isinstance(card_number, str):
        return False

    digits = re.sub(r"[\s-]", "", card_number)
    if not digits.isdigit() or not 13 <= len(digits) <= 19:
        return False

    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit

    return total % 10 == 0


def mask_card_number(card_number: Optional[str]) -> str:
    """Reduce a card number to its last four digits"""
    if not card_number:
        return "****-****-****-****"
    digits = re.sub(r"[\s-]", "", str(card_number))
    if len(digits) < 4:
        return "****-****-****-****"
    return f"****-****-****-{digits[-4:]}"


def mask_payment_data(payment_data: dict) -> dict:
    """Copy of payment data that is safe to log (card number and CVV redacted)"""
    masked = copy.deepcopy(payment_data)
    card = masked.get("card_details")
    if isinstance(card, dict):
        card["card_number"] = mask_card_number(card.get("card_number"))
        if "cvv" in card:
            card["cvv"] = "***"
    return masked


def validate_text_length(value: Optional[str], field: str, min_length: int, max_length: int) -> str:
    """
    Validate free text length after trimming.

    Raises:
        ValueError: If the text is missing or outside the bounds
    """
    text = (value or "").strip()
    if len(text) < min_length or len(text) > max_length:
        raise ValueError(f"{field} must be between {min_length} and {max_length} characters")
    return text
