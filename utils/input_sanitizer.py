"""
utils/input_sanitizer.py
Input format rules for crew identifiers and free text, plus detection of
common attack payloads in request URLs and query strings
"""

import re
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

EMPLOYEE_ID_PATTERN = re.compile(r'^[A-Z]{2,3}\d{3,7}$')
FLIGHT_NUMBER_PATTERN = re.compile(r'^[A-Z]{2,3}\d{1,4}[A-Z]?$')
PERSON_NAME_PATTERN = re.compile(r"^[a-zA-Z\s'-]+$")
AIRLINE_PATTERN = re.compile(r"^[a-zA-Z\s&'-]+$")

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50

# Patterns checked against URL paths and query strings
SQL_INJECTION_PATTERNS = [
    r"union.*select",
    r"insert.*into",
    r"delete.*from",
    r"drop.*table",
    r"exec.*xp_",
    r"sp_password",
]

XSS_PATTERNS = [
    r"<script",
    r"javascript:",
    r"vbscript:",
    r"onload=",
    r"onerror=",
    r"eval\(",
]

PATH_TRAVERSAL_PATTERNS = [
    r"\.\./",
    r"\.\.\\",
    r"%2e%2e%2f",
    r"%252e%252e%252f",
]

_ATTACK_PATTERNS = (
    [("sql_injection", re.compile(p, re.IGNORECASE)) for p in SQL_INJECTION_PATTERNS] +
    [("xss", re.compile(p, re.IGNORECASE)) for p in XSS_PATTERNS] +
    [("path_traversal", re.compile(p, re.IGNORECASE)) for p in PATH_TRAVERSAL_PATTERNS]
)


def detect_attack_pattern(text: str) -> Tuple[bool, Optional[str], Optional[str]]:
    """
    Scan text for common attack payloads

    Args:
        text: Text to scan

    Returns:
        Tuple of (is_malicious, attack_type, matched_pattern)
    """
    if not text:
        return False, None, None

    for attack_type, pattern in _ATTACK_PATTERNS:
        if pattern.search(text):
            return True, attack_type, pattern.pattern

    return False, None, None


def sanitize_text(text: Optional[str], max_length: int = 2000) -> Optional[str]:
    """
    Strip control characters and surrounding whitespace

    Args:
        text: Input text (None passes through)
        max_length: Maximum allowed length

    Returns:
        Sanitized text, or None if nothing is left
    """
    if text is None:
        return None
    text = ''.join(c for c in text if ord(c) >= 32 or c in '\t\n\r').replace('\x7f', '')
    text = text.strip()[:max_length]
    return text or None


def validate_employee_id(value: str) -> str:
    """
    Validate employee id format (2-3 uppercase letters then 3-7 digits)

    Raises:
        ValueError: If the format is wrong
    """
    if not value or not EMPLOYEE_ID_PATTERN.match(value):
        raise ValueError('Employee ID must be 2-3 uppercase letters followed by 3-7 digits')
    return value


def validate_flight_number(value: Optional[str]) -> Optional[str]:
    """
    Validate flight number format (e.g. AA123, UAL1234B)

    Raises:
        ValueError: If the format is wrong
    """
    if value is None:
        return None
    if not FLIGHT_NUMBER_PATTERN.match(value):
        raise ValueError('Flight number must be 2-3 uppercase letters, 1-4 digits and an optional letter')
    return value


def validate_person_name(value: str) -> str:
    """
    Validate a crew member's name

    Raises:
        ValueError: If the name has disallowed characters or length
    """
    value = value.strip()
    if not NAME_MIN_LENGTH <= len(value) <= NAME_MAX_LENGTH:
        raise ValueError(f'Name must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters')
    if not PERSON_NAME_PATTERN.match(value):
        raise ValueError('Name can only contain letters, spaces, hyphens, and apostrophes')
    return value


def validate_airline(value: str) -> str:
    """
    Validate an airline name

    Raises:
        ValueError: If the name has disallowed characters or length
    """
    value = value.strip()
    if not NAME_MIN_LENGTH <= len(value) <= NAME_MAX_LENGTH:
        raise ValueError(f'Airline must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters')
    if not AIRLINE_PATTERN.match(value):
        raise ValueError('Airline name can only contain letters, spaces, ampersands, hyphens, and apostrophes')
    return value
