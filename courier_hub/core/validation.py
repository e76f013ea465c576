"""
Input Validation Utilities

Phone/WhatsApp normalization and text sanitization for operator-entered
profile data (couriers, establishments, neighbourhood names).
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    NON_DIGITS = re.compile(r"\D")
    MULTIPLE_SPACES = re.compile(r" +")
    PRICE_TABLE_CODE = re.compile(r"^pre_(\d{3})$")


class PhoneNumberValidator:
    """Brazilian phone numbers as typed by operators"""

    MIN_DIGITS = 10
    MAX_DIGITS = 13
    COUNTRY_CODE = "55"
    WHATSAPP_SUFFIX = "@s.whatsapp.net"

    @staticmethod
    def digits(phone: str) -> str:
        return ValidationPatterns.NON_DIGITS.sub("", phone or "")

    @staticmethod
    def validate(phone: str) -> bool:
        """DDD + number, with or without the 55 country code"""
        cleaned = PhoneNumberValidator.digits(phone)
        return PhoneNumberValidator.MIN_DIGITS <= len(cleaned) <= PhoneNumberValidator.MAX_DIGITS

    @staticmethod
    def to_whatsapp_id(phone: str) -> str:
        """
        Normalize a typed number to the WhatsApp account id used by the
        intake automation.

        WhatsApp ids for Brazilian mobiles carry no ninth digit, so:
            11 digits without country code - drop the 9 after the DDD
            10 digits                      - prepend 55
            13 digits with country code    - drop the 9 after the DDD

        Examples:
            "(11) 99123-4567"  -> "551191234567@s.whatsapp.net"
            "+55 11 99123-4567" -> "551191234567@s.whatsapp.net"
        """
        cleaned = PhoneNumberValidator.digits(phone)
        country = PhoneNumberValidator.COUNTRY_CODE

        if len(cleaned) == 11 and not cleaned.startswith(country):
            cleaned = cleaned[:2] + cleaned[3:]
        if len(cleaned) == 10:
            cleaned = country + cleaned
        if len(cleaned) == 13 and cleaned.startswith(country):
            cleaned = cleaned[:4] + cleaned[5:]

        return f"{cleaned}{PhoneNumberValidator.WHATSAPP_SUFFIX}"

    @staticmethod
    def mask(phone: str) -> str:
        """Mask phone number for logging (privacy)"""
        if len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for storage"""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        """
        Trim, cap the length, drop null bytes and collapse runs of spaces.
        HTML escaping is left to the screens that render the text.
        """
        if not text:
            return ""
        sanitized = text.strip()[:max_length]
        sanitized = sanitized.replace("\x00", "")
        return ValidationPatterns.MULTIPLE_SPACES.sub(" ", sanitized)


# Pydantic field validators for reuse
def phone_validator(v: str | None) -> str | None:
    """Pydantic field validator for phone numbers - keeps digits only"""
    if v is None:
        return None
    if not PhoneNumberValidator.validate(v):
        raise ValueError("Invalid phone number format")
    return PhoneNumberValidator.digits(v)


def name_validator(v: str | None) -> str | None:
    """Pydantic field validator for names"""
    if v is None:
        return None
    v = TextSanitizer.sanitize(v, max_length=150)
    if len(v) < 2:
        raise ValueError("Name too short (minimum 2 characters)")
    return v
