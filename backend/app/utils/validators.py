"""
Input validation for provider-facing operations.

Each validate_* function either returns cleaned values or raises a
ValidationError carrying one message per offending field. Nothing here
touches the network or the store.
"""
import math
import re
from datetime import date
from typing import Any, Dict, Optional, Tuple

from app.core.errors import ValidationError

COUNTRY_CODE = "254"

COLLECTION_AMOUNT_BOUNDS = (1, 150_000)
DISBURSEMENT_AMOUNT_BOUNDS = (10, 150_000)

B2C_COMMAND_IDS = ("SalaryPayment", "BusinessPayment", "PromotionPayment")
SUBSCRIPTION_FREQUENCIES = ("daily", "weekly", "monthly")

_PHONE_PREFIX = re.compile(r"^(\+?254|0)")
_NORMALIZED_PHONE = re.compile(r"^254\d{9}$")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_phone(raw: Any) -> str:
    """
    0712345678, +254712345678 and 254712345678 all become 254712345678.
    Raises ValueError for anything that does not end up as 12 digits.
    """
    if raw is None:
        raise ValueError("Phone number is required")
    phone = re.sub(r"[\s\-()]", "", str(raw))
    phone = _PHONE_PREFIX.sub(COUNTRY_CODE, phone, count=1)
    if not _NORMALIZED_PHONE.match(phone):
        raise ValueError("Enter a valid Kenyan phone number (e.g. 254712345678)")
    return phone


def _check_phone(value: Any, errors: Dict[str, str], field: str = "phoneNumber") -> Optional[str]:
    try:
        return normalize_phone(value)
    except ValueError as e:
        errors[field] = str(e)
        return None


def _check_amount(value: Any, bounds: Tuple[int, int], errors: Dict[str, str]) -> Optional[float]:
    low, high = bounds
    if isinstance(value, bool) or value is None or value == "":
        errors["amount"] = "Amount is required"
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        errors["amount"] = "Amount must be a number"
        return None
    if math.isnan(amount) or math.isinf(amount):
        errors["amount"] = "Amount must be a number"
        return None
    if amount < low:
        errors["amount"] = f"Amount must be at least KES {low:,}"
        return None
    if amount > high:
        errors["amount"] = f"Amount cannot exceed KES {high:,}"
        return None
    return amount


def _check_text(value: Any, field: str, label: str, max_length: int, errors: Dict[str, str]) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    if not text:
        errors[field] = f"{label} is required"
        return None
    if len(text) > max_length:
        errors[field] = f"{label} must be at most {max_length} characters"
        return None
    return text


def _check_environment(value: Any, errors: Dict[str, str]) -> Optional[str]:
    if value not in ("sandbox", "production"):
        errors["environment"] = "Environment must be 'sandbox' or 'production'"
        return None
    return value


def validate_collection(phone_number, amount, account_reference, transaction_desc, environment) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    cleaned = {
        "phone_number": _check_phone(phone_number, errors),
        "amount": _check_amount(amount, COLLECTION_AMOUNT_BOUNDS, errors),
        "account_reference": _check_text(account_reference, "accountReference", "Account reference", 50, errors),
        "transaction_desc": _check_text(transaction_desc, "transactionDesc", "Description", 100, errors),
        "environment": _check_environment(environment, errors),
    }
    if errors:
        raise ValidationError(errors)
    return cleaned


def validate_disbursement(phone_number, amount, occasion, remarks, command_id, environment) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    cleaned = {
        "phone_number": _check_phone(phone_number, errors),
        "amount": _check_amount(amount, DISBURSEMENT_AMOUNT_BOUNDS, errors),
        "occasion": _check_text(occasion, "occasion", "Occasion", 100, errors),
        "remarks": _check_text(remarks, "remarks", "Remarks", 100, errors),
        "command_id": command_id,
        "environment": _check_environment(environment, errors),
    }
    if command_id not in B2C_COMMAND_IDS:
        errors["commandId"] = f"Command must be one of {', '.join(B2C_COMMAND_IDS)}"
    if errors:
        raise ValidationError(errors)
    return cleaned


def validate_status_query(transaction_id, environment) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    cleaned = {
        "transaction_id": _check_text(transaction_id, "transactionId", "Transaction ID", 50, errors),
        "environment": _check_environment(environment, errors),
    }
    if errors:
        raise ValidationError(errors)
    return cleaned


def validate_date(value: Optional[str], field: str = "date") -> Optional[str]:
    """YYYY-MM-DD or None."""
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not _DATE.match(value):
        raise ValidationError({field: "Date must be in YYYY-MM-DD format"})
    try:
        date.fromisoformat(value)
    except ValueError:
        raise ValidationError({field: "Date is not a valid calendar date"})
    return value


def validate_environment(value: Any) -> str:
    errors: Dict[str, str] = {}
    environment = _check_environment(value, errors)
    if errors:
        raise ValidationError(errors)
    return environment


def validate_customer(name, phone_number, email=None, account_number=None) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    cleaned = {
        "name": _check_text(name, "name", "Name", 100, errors),
        "phone_number": _check_phone(phone_number, errors),
        "email": str(email).strip() if email else None,
        "account_number": str(account_number).strip() if account_number else None,
    }
    if cleaned["email"] and "@" not in cleaned["email"]:
        errors["email"] = "Enter a valid email address"
    if errors:
        raise ValidationError(errors)
    if not cleaned["account_number"]:
        cleaned["account_number"] = cleaned["phone_number"]
    return cleaned


def validate_subscription(customer_name, phone_number, amount, frequency, start_date, account_reference) -> Dict[str, Any]:
    errors: Dict[str, str] = {}
    cleaned = {
        "customer_name": _check_text(customer_name, "customerName", "Customer name", 100, errors),
        "phone_number": _check_phone(phone_number, errors),
        "amount": _check_amount(amount, COLLECTION_AMOUNT_BOUNDS, errors),
        "frequency": frequency,
        "account_reference": _check_text(account_reference, "accountReference", "Account reference", 50, errors),
        "start_date": None,
    }
    if frequency not in SUBSCRIPTION_FREQUENCIES:
        errors["frequency"] = f"Frequency must be one of {', '.join(SUBSCRIPTION_FREQUENCIES)}"
    if not start_date:
        errors["startDate"] = "Start date is required"
    else:
        try:
            cleaned["start_date"] = date.fromisoformat(validate_date(start_date, "startDate"))
        except ValidationError as e:
            errors.update(e.errors)
    if errors:
        raise ValidationError(errors)
    return cleaned
