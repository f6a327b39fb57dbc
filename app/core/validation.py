"""
Input Validation Utilities

- Phone numbers (Nigerian local format and E.164)
- Names, addresses and free text (length limits, control chars, injection)
"""
import re


class ValidationPatterns:
    # 080X XXX XXXX / +234 80X XXX XXXX
    PHONE_NIGERIA = re.compile(r"^(?:\+?234|0)[789][01]\d{8}$")

    PHONE_INTERNATIONAL = re.compile(r"^\+[1-9]\d{6,14}$")

    NAME = re.compile(r"^[A-Za-zÀ-ɏ\s\-\'\.]{2,100}$")

    ADDRESS = re.compile(r"^[A-Za-zÀ-ɏ0-9\s\,\.\-\/\'\"#()]+$")

    # ביטויים חשודים בלבד - לא חוסם כתובות כמו "Union Road"
    INJECTION_PATTERNS = [
        re.compile(r"--\s*$|/\*|\*/"),
        re.compile(r"['\"]\s*(OR|AND)\s+['\"]?\w*['\"]?\s*=", re.IGNORECASE),
        re.compile(r";\s*(SELECT|INSERT|UPDATE|DELETE|DROP|ALTER|TRUNCATE)\b", re.IGNORECASE),
        re.compile(r"\bUNION\s+(ALL\s+)?SELECT\b", re.IGNORECASE),
        re.compile(r"<script[^>]*>", re.IGNORECASE),
        re.compile(r"javascript:", re.IGNORECASE),
        re.compile(r"\bon\w+=", re.IGNORECASE),
    ]


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def validate(phone: str, allow_international: bool = True) -> bool:
        if not phone:
            return False
        cleaned = re.sub(r"[\s\-()]", "", phone)
        if ValidationPatterns.PHONE_NIGERIA.match(cleaned):
            return True
        return bool(allow_international and ValidationPatterns.PHONE_INTERNATIONAL.match(cleaned))

    @staticmethod
    def normalize(phone: str) -> str:
        """Local numbers become +234..."""
        cleaned = re.sub(r"[^\d+]", "", phone)
        if cleaned.startswith("0"):
            cleaned = "+234" + cleaned[1:]
        elif cleaned.startswith("234"):
            cleaned = "+" + cleaned
        return cleaned

    @staticmethod
    def mask(phone: str) -> str:
        """For logs: +23480312****"""
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    @staticmethod
    def remove_control_characters(text: str) -> str:
        return "".join(ch for ch in text if ch >= " " or ch in "\n\r\t")

    @staticmethod
    def check_for_injection(text: str) -> tuple[bool, str | None]:
        """Returns (is_safe, matched_pattern)"""
        for pattern in ValidationPatterns.INJECTION_PATTERNS:
            if pattern.search(text):
                return False, "suspicious input"
        return True, None

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        text = TextSanitizer.remove_control_characters(text or "")
        return re.sub(r"[ \t]+", " ", text).strip()[:max_length]


class NameValidator:
    MIN_LENGTH = 2
    MAX_LENGTH = 100

    @staticmethod
    def validate(name: str) -> tuple[bool, str | None]:
        if not name:
            return False, "Name is required"
        name = name.strip()
        if len(name) < NameValidator.MIN_LENGTH:
            return False, f"Name too short (minimum {NameValidator.MIN_LENGTH} characters)"
        if len(name) > NameValidator.MAX_LENGTH:
            return False, f"Name too long (maximum {NameValidator.MAX_LENGTH} characters)"
        if not ValidationPatterns.NAME.match(name):
            return False, "Name contains invalid characters"
        return True, None


class AddressValidator:
    MIN_LENGTH = 3
    MAX_LENGTH = 255

    @staticmethod
    def validate(address: str) -> tuple[bool, str | None]:
        if not address:
            return False, "Address is required"
        address = address.strip()
        if len(address) < AddressValidator.MIN_LENGTH:
            return False, f"Address too short (minimum {AddressValidator.MIN_LENGTH} characters)"
        if len(address) > AddressValidator.MAX_LENGTH:
            return False, f"Address too long (maximum {AddressValidator.MAX_LENGTH} characters)"
        if not ValidationPatterns.ADDRESS.match(address):
            return False, "Address contains invalid characters"
        is_safe, _ = TextSanitizer.check_for_injection(address)
        if not is_safe:
            return False, "Address contains suspicious input"
        return True, None

    @staticmethod
    def normalize(address: str) -> str:
        return re.sub(r"\s+", " ", (address or "").strip())


# Pydantic field validators for reuse
def phone_validator(v: str | None) -> str | None:
    if v is None:
        return None
    if not PhoneNumberValidator.validate(v):
        raise ValueError("Invalid phone number format")
    return PhoneNumberValidator.normalize(v)


def name_validator(v: str | None) -> str | None:
    if v is None:
        return None
    is_valid, error = NameValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return TextSanitizer.sanitize(v, max_length=NameValidator.MAX_LENGTH)


def address_validator(v: str | None) -> str | None:
    if v is None:
        return None
    is_valid, error = AddressValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return AddressValidator.normalize(v)


def sanitized_text_validator(v: str | None, max_length: int = 1000) -> str | None:
    if v is None:
        return None
    is_safe, _ = TextSanitizer.check_for_injection(v)
    if not is_safe:
        raise ValueError("Invalid input")
    return TextSanitizer.sanitize(v, max_length)
