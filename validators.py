"""Field validators shared by every public and admin form.

Each validator is a pure predicate: it never raises and answers False for
anything it cannot make sense of. Forms are described by fixed tables of
FieldRule records; validate_form turns a submission into a field -> message
map that is empty when the submission may be sent.
"""
import math
import re
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Tuple

PHONE_RE = re.compile(r"^[0-9]{10}$")
NATIONAL_ID_RE = re.compile(r"^[0-9]{12}$")
EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$", re.IGNORECASE)

ANIMAL_STATUSES = ("Available", "Adopted", "Under Care")
SPECIES = ("Dog", "Cat", "Bird", "Rabbit", "Other")
GENDERS = ("Male", "Female", "Unknown")
ADD_TARGETS = ("adopt", "rescued", "both")


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    return None


def phone(value: Any) -> bool:
    v = _text(value)
    # re's $ also matches before a trailing newline
    return v is not None and PHONE_RE.fullmatch(v) is not None


def national_id(value: Any) -> bool:
    v = _text(value)
    return v is not None and NATIONAL_ID_RE.fullmatch(v) is not None


def email(value: Any) -> bool:
    v = _text(value)
    return v is not None and EMAIL_RE.fullmatch(v) is not None


def amount(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        num = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError, AttributeError):
        return False
    return math.isfinite(num) and num >= 0


def age(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        num = value
    elif isinstance(value, float):
        if not value.is_integer():
            return False
        num = int(value)
    elif isinstance(value, str):
        try:
            num = int(value.strip())
        except ValueError:
            return False
    else:
        return False
    return 0 < num < 150


def required(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return len(value.strip()) > 0
    return True


def max_length(value: Any, limit: int) -> bool:
    v = _text(value)
    return v is not None and len(v) <= limit


def min_length(value: Any, limit: int) -> bool:
    v = _text(value)
    return v is not None and len(v.strip()) >= limit


def one_of(choices: Tuple[str, ...]) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        return value in choices
    return check


ERROR_MESSAGES = {
    "phone": "Phone number must be exactly 10 digits",
    "national_id": "Aadhaar number must be exactly 12 digits",
    "email": "Please enter a valid email address",
    "amount": "Amount must be a non-negative number",
    "age": "Age must be between 1 and 149",
    "required": "This field is required",
}


def max_length_message(limit: int) -> str:
    return f"Maximum {limit} characters allowed"


def min_length_message(limit: int) -> str:
    return f"Minimum {limit} characters required"


class Check(NamedTuple):
    predicate: Callable[[Any], bool]
    message: str


REQUIRED = Check(required, ERROR_MESSAGES["required"])
PHONE = Check(phone, ERROR_MESSAGES["phone"])
NATIONAL_ID = Check(national_id, ERROR_MESSAGES["national_id"])
EMAIL = Check(email, ERROR_MESSAGES["email"])
AMOUNT = Check(amount, ERROR_MESSAGES["amount"])
AGE = Check(age, ERROR_MESSAGES["age"])


def longest(limit: int) -> Check:
    return Check(lambda v: max_length(v, limit), max_length_message(limit))


def shortest(limit: int) -> Check:
    return Check(lambda v: min_length(v, limit), min_length_message(limit))


def choice(choices: Tuple[str, ...], message: str) -> Check:
    return Check(one_of(choices), message)


class FieldRule(NamedTuple):
    field: str
    checks: Tuple[Check, ...]
    optional: bool = False


ANIMAL_FORM: Tuple[FieldRule, ...] = (
    FieldRule("name", (REQUIRED, longest(100))),
    FieldRule("species", (REQUIRED, choice(SPECIES, "Select a species"))),
    FieldRule("breed", (longest(100),), optional=True),
    FieldRule("age", (AGE,), optional=True),
    FieldRule("gender", (choice(GENDERS, "Select a gender"),), optional=True),
    FieldRule("rescue_date", (REQUIRED,)),
    FieldRule("current_status", (REQUIRED, choice(ANIMAL_STATUSES, "Status must be Available, Adopted or Under Care"))),
    FieldRule("rescue_story", (longest(2000),), optional=True),
    FieldRule("add_to", (REQUIRED, choice(ADD_TARGETS, "Choose where to add the animal"))),
)

ADOPTION_FORM: Tuple[FieldRule, ...] = (
    FieldRule("name", (REQUIRED, shortest(2))),
    FieldRule("contact_no", (REQUIRED, PHONE)),
    FieldRule("aadhaar_no", (REQUIRED, NATIONAL_ID)),
    FieldRule("email", (REQUIRED, EMAIL)),
    FieldRule("already_pet", (Check(one_of(("yes", "no")), "Please select an option"),)),
    FieldRule("reason", (Check(required, "Please explain why you want to adopt"), longest(1000))),
)

VOLUNTEER_FORM: Tuple[FieldRule, ...] = (
    FieldRule("name", (REQUIRED,)),
    FieldRule("email", (REQUIRED, EMAIL)),
    FieldRule("phone", (REQUIRED, PHONE)),
    FieldRule("age", (REQUIRED, AGE)),
    FieldRule("address", (REQUIRED,)),
    FieldRule("why_volunteer", (REQUIRED, longest(1000))),
)

CONTACT_FORM: Tuple[FieldRule, ...] = (
    FieldRule("name", (REQUIRED,)),
    FieldRule("email", (REQUIRED, EMAIL)),
    FieldRule("phone", (PHONE,), optional=True),
    FieldRule("message", (REQUIRED, longest(2000))),
)

DONATION_FORM: Tuple[FieldRule, ...] = (
    FieldRule("first_name", (REQUIRED,)),
    FieldRule("last_name", (REQUIRED,)),
    FieldRule("email", (REQUIRED, EMAIL)),
    FieldRule("phone", (PHONE,), optional=True),
    FieldRule("amount", (REQUIRED, AMOUNT)),
)

LOST_FOUND_FORM: Tuple[FieldRule, ...] = (
    FieldRule("pet_name", (REQUIRED,)),
    FieldRule("species", (REQUIRED,)),
    FieldRule("last_seen_location", (REQUIRED,)),
    FieldRule("date_lost", (REQUIRED,)),
    FieldRule("contact_number", (REQUIRED, PHONE)),
    FieldRule("description", (REQUIRED, longest(2000))),
)

GOV_RULE_FORM: Tuple[FieldRule, ...] = (
    FieldRule("title", (Check(required, "Title is required"), longest(300))),
    FieldRule("summary", (longest(1000),), optional=True),
)


def validate_form(rules: Tuple[FieldRule, ...], data: Mapping[str, Any]) -> Dict[str, str]:
    """Return field -> message for every failing field; empty means acceptable."""
    errors: Dict[str, str] = {}
    for rule in rules:
        value = data.get(rule.field)
        if rule.optional and not required(value):
            continue
        for check in rule.checks:
            if not check.predicate(value):
                errors[rule.field] = check.message
                break
    return errors
