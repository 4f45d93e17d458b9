from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.models.patient import Patient, WeightLossIntake
from app.models.webhook_event import WebhookEvent
from app.services.audit import log_event, snapshot_model
from app.services.normalize import merge_hashtags, normalize_email, normalize_name
from app.services.patients import find_patient_by_email, insert_patient
from app.services.states import abbreviate_state

logger = logging.getLogger("eonmeds.webhooks.heyflow")

INTERNAL_REP_FORM_ID = "Gb2YDWzoMnCcOAH17EYF"
DEFAULT_EVENT_TYPE = "form.submitted"

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "first_name": ("firstname", "first_name", "firstName"),
    "last_name": ("lastname", "last_name", "lastName"),
    "email": ("email", "Email", "email_address"),
    "phone": ("Phone Number", "PhoneNumber", "phone", "phone_number", "telefono"),
    "date_of_birth": ("dob", "date_of_birth", "dateOfBirth", "birthdate"),
    "gender": ("gender", "Gender", "sex"),
    "height_feet": ("feet", "height_feet"),
    "height_inches": ("inches", "height_inches"),
    "weight_lbs": ("starting_weight", "weight", "weight_lbs", "current_weight"),
    "target_weight_lbs": ("idealweight", "target_weight", "target_weight_lbs", "goal_weight"),
    "bmi": ("BMI", "bmi"),
    "address": ("address", "Address"),
    "address_house": ("address [house]", "address_house"),
    "address_street": ("address [street]", "address_street"),
    "apartment_number": ("apartment#", "apartment_number", "apt"),
    "city": ("address [city]", "city"),
    "state": ("address [state]", "state"),
    "zip": ("address [zip]", "zip", "zipcode"),
    "consent_treatment": ("consent_treatment",),
    "consent_telehealth": ("consent_telehealth",),
    "rep_name": ("repname", "rep_name", "representative"),
    "weight_loss_timeline": ("weight_loss_timeline",),
    "previous_weight_loss_attempts": ("previous_weight_loss_attempts",),
    "exercise_frequency": ("exercise_frequency",),
    "diet_restrictions": ("diet_restrictions",),
    "diabetes_type": ("diabetes_type",),
    "thyroid_condition": ("thyroid_condition",),
    "heart_conditions": ("heart_conditions",),
}

FORM_TYPE_KEYS = ("flowID", "formType", "form_type", "type")
EVENT_ID_KEYS = ("id", "webhookId", "submissionId")
# Envelope keys that never carry patient answers.
ENVELOPE_KEYS = frozenset(
    {
        "id",
        "webhookId",
        "submissionId",
        "flowID",
        "formType",
        "form_type",
        "type",
        "eventType",
        "createdAt",
        "created_at",
        "form",
        "submission",
        "fields",
        "data",
    }
)

TRUTHY = frozenset({"yes", "true", "1", "on", "si", "sí", "y"})
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%Y/%m/%d", "%m/%d/%y")


class HeyFlowPayloadError(Exception):
    pass


def _answer(item: Any) -> Any:
    if not isinstance(item, dict):
        return item
    values = item.get("values")
    if isinstance(values, list):
        if not values:
            return None
        first = values[0]
        return first.get("answer") if isinstance(first, dict) else first
    if "value" in item:
        return item["value"]
    if "answer" in item:
        return item["answer"]
    return None


def _fields_from_list(items: list) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("variable") or item.get("name") or item.get("id")
        if name:
            fields[str(name)] = _answer(item)
    return fields


def _fields_from_container(container: Any) -> dict[str, Any]:
    if isinstance(container, dict):
        return dict(container)
    if isinstance(container, list):
        return _fields_from_list(container)
    return {}


def _has_email(fields: dict[str, Any]) -> bool:
    return any(fields.get(alias) for alias in FIELD_ALIASES["email"])


def extract_fields(payload: dict[str, Any]) -> dict[str, Any]:
    """Flatten the HeyFlow payload variants into ``{field name: answer}``.

    Shapes are tried in order: ``data`` object, ``fields`` object, ``fields``
    array of ``{variable, values: [{answer}]}``, top-level properties, then
    ``submission.data``/``submission.fields``.
    """
    if not isinstance(payload, dict):
        raise HeyFlowPayloadError("Unable to extract data from webhook payload")

    data = payload.get("data")
    if isinstance(data, dict) and data:
        return dict(data)

    raw_fields = payload.get("fields")
    if isinstance(raw_fields, dict) and raw_fields:
        return dict(raw_fields)
    if isinstance(raw_fields, list) and raw_fields:
        fields = _fields_from_list(raw_fields)
        if fields:
            return fields

    if _has_email(payload):
        return {key: value for key, value in payload.items() if key not in ENVELOPE_KEYS}

    submission = payload.get("submission")
    if isinstance(submission, dict):
        fields = _fields_from_container(submission.get("data")) or _fields_from_container(
            submission.get("fields")
        )
        if fields:
            return fields

    raise HeyFlowPayloadError("Unable to extract data from webhook payload")


def provider_event_id(payload: dict[str, Any]) -> str:
    for key in EVENT_ID_KEYS:
        value = payload.get(key)
        if value:
            return str(value)
    submission = payload.get("submission")
    if isinstance(submission, dict) and submission.get("id"):
        return str(submission["id"])
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def event_type_of(payload: dict[str, Any]) -> str:
    return str(payload.get("eventType") or DEFAULT_EVENT_TYPE)


def form_type_of(payload: dict[str, Any]) -> str:
    for key in FORM_TYPE_KEYS:
        value = payload.get(key)
        if value:
            return str(value)
    form = payload.get("form")
    if isinstance(form, dict) and form.get("id"):
        return str(form["id"])
    return "unknown"


def _lookup(fields: dict[str, Any], name: str) -> Any:
    lowered = {key.lower(): value for key, value in fields.items()}
    for alias in FIELD_ALIASES[name]:
        for candidate in (fields.get(alias), lowered.get(alias.lower())):
            if candidate is None:
                continue
            if isinstance(candidate, str):
                candidate = candidate.strip()
                if not candidate:
                    continue
            return candidate
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, list):
        value = ", ".join(str(item) for item in value if item not in (None, ""))
    text = str(value).strip()
    return text or None


def to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", "").strip())
    except ValueError:
        match = re.search(r"\d+(?:\.\d+)?", str(value))
        return float(match.group()) if match else None


def to_int(value: Any) -> int:
    number = to_float(value)
    return int(number) if number is not None else 0


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY


def parse_date(value: Any) -> date | None:
    text = _text(value)
    if not text:
        return None
    candidate = text[:10] if re.match(r"^\d{4}-\d{2}-\d{2}T", text) else text
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    logger.warning("Unparseable date of birth in intake submission")
    return None


def split_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def calculate_height_inches(feet: Any, inches: Any) -> int:
    return to_int(feet) * 12 + to_int(inches)


def calculate_bmi(weight_lbs: float | None, height_inches: int | None) -> float | None:
    if not weight_lbs or not height_inches or weight_lbs <= 0 or height_inches <= 0:
        return None
    return round(weight_lbs / (height_inches * height_inches) * 703, 1)


def build_hashtags(form_type: str, rep_name: str | None) -> tuple[list[str], bool]:
    hashtags = ["weightloss"]
    is_rep_form = False
    lowered = form_type.lower()
    if form_type == INTERNAL_REP_FORM_ID:
        is_rep_form = True
        if rep_name:
            hashtags.append(re.sub(r"\s+", "", rep_name))
        else:
            logger.warning("Internal rep form submitted without a rep name")
        hashtags.append("internalrep")
    elif "external-english" in lowered:
        hashtags.append("externalenglish")
    elif "external-spanish" in lowered:
        hashtags.append("externalspanish")
    else:
        hashtags.append("webdirect")
    return merge_hashtags([], hashtags), is_rep_form


def detect_form_type(payload: dict[str, Any]) -> str:
    form = payload.get("form") if isinstance(payload.get("form"), dict) else {}
    haystack = " ".join(
        str(part or "").lower() for part in (form.get("name"), form.get("id"), form_type_of(payload))
    )
    if "weight" in haystack:
        return "weight_loss"
    if "testosterone" in haystack:
        return "testosterone"
    if "diabetes" in haystack:
        return "diabetes"
    return "general"


class FieldMapper:
    """Recognises intake fields whose names are not one of the known aliases."""

    patterns: dict[str, tuple[re.Pattern, ...]] = {
        "first_name": (re.compile(r"first.*name", re.I), re.compile(r"nombre", re.I), re.compile(r"fname", re.I)),
        "last_name": (re.compile(r"last.*name", re.I), re.compile(r"apellido", re.I), re.compile(r"lname", re.I)),
        "email": (re.compile(r"e-?mail", re.I), re.compile(r"correo", re.I)),
        "phone": (re.compile(r"phone", re.I), re.compile(r"telefono", re.I), re.compile(r"mobile|cell", re.I)),
        "date_of_birth": (re.compile(r"birth", re.I), re.compile(r"nacimiento", re.I), re.compile(r"dob", re.I)),
        "weight_lbs": (re.compile(r"weight", re.I), re.compile(r"peso", re.I), re.compile(r"lbs|pounds", re.I)),
        "height_inches": (re.compile(r"height", re.I), re.compile(r"altura", re.I)),
        "gender": (re.compile(r"gender|sex", re.I), re.compile(r"genero|sexo", re.I)),
        "consent_treatment": (re.compile(r"consent|agree|accept", re.I), re.compile(r"consentimiento", re.I)),
    }

    def __init__(self) -> None:
        self._known = {
            alias.lower() for aliases in FIELD_ALIASES.values() for alias in aliases
        }

    def detect(self, field_name: str) -> str | None:
        if field_name.lower() in self._known:
            return None
        for target, patterns in self.patterns.items():
            if any(pattern.search(field_name) for pattern in patterns):
                return target
        return None

    def unmapped(self, fields: dict[str, Any]) -> list[str]:
        return sorted(
            name
            for name in fields
            if name.lower() not in self._known and name not in ENVELOPE_KEYS and self.detect(name) is None
        )


@dataclass
class IntakeSubmission:
    email: str
    form_type: str
    hashtags: list[str]
    is_rep_form: bool
    submission_id: str | None
    patient_fields: dict[str, Any] = field(default_factory=dict)
    weight_loss: dict[str, Any] | None = None
    rep_name: str | None = None
    unmapped_fields: list[str] = field(default_factory=list)


def map_submission(payload: dict[str, Any]) -> IntakeSubmission:
    fields = extract_fields(payload)
    mapper = FieldMapper()

    # Fall back to pattern matches for fields HeyFlow renamed.
    detected: dict[str, Any] = {}
    for name, value in fields.items():
        target = mapper.detect(name)
        if target and target not in detected and value not in (None, ""):
            detected[target] = value

    def get(name: str) -> Any:
        value = _lookup(fields, name)
        if value is None:
            value = detected.get(name)
        return value

    email = normalize_email(_text(get("email")))
    if not email:
        raise HeyFlowPayloadError("Missing required field: email")

    height_inches = calculate_height_inches(get("height_feet"), get("height_inches")) or None
    weight_lbs = to_float(get("weight_lbs"))
    target_weight = to_float(get("target_weight_lbs"))
    bmi = to_float(get("bmi")) or calculate_bmi(weight_lbs, height_inches)

    form_type = form_type_of(payload)
    rep_name = _text(get("rep_name"))
    hashtags, is_rep_form = build_hashtags(form_type, rep_name)

    patient_fields = {
        "first_name": normalize_name(_text(get("first_name"))),
        "last_name": normalize_name(_text(get("last_name"))),
        "email": email,
        "phone": _text(get("phone")),
        "date_of_birth": parse_date(get("date_of_birth")),
        "gender": _text(get("gender")),
        "height_inches": height_inches,
        "weight_lbs": weight_lbs,
        "target_weight_lbs": target_weight,
        "bmi": bmi,
        "address": _text(get("address")),
        "address_house": _text(get("address_house")),
        "address_street": _text(get("address_street")),
        "apartment_number": _text(get("apartment_number")),
        "city": _text(get("city")),
        "state": abbreviate_state(_text(get("state"))),
        "zip": _text(get("zip")),
        "consent_treatment": is_truthy(get("consent_treatment")),
        "consent_telehealth": is_truthy(get("consent_telehealth")),
        "form_type": form_type,
    }

    weight_loss = None
    if "weight" in form_type.lower() or target_weight:
        weight_loss = {
            "target_weight_lbs": target_weight,
            "weight_loss_timeline": _text(get("weight_loss_timeline")),
            "previous_weight_loss_attempts": _text(get("previous_weight_loss_attempts")),
            "exercise_frequency": _text(get("exercise_frequency")),
            "diet_restrictions": split_list(get("diet_restrictions")),
            "diabetes_type": _text(get("diabetes_type")),
            "thyroid_condition": is_truthy(get("thyroid_condition")),
            "heart_conditions": split_list(get("heart_conditions")),
        }

    return IntakeSubmission(
        email=email,
        form_type=form_type,
        hashtags=hashtags,
        is_rep_form=is_rep_form,
        submission_id=_text(payload.get("id") or payload.get("webhookId")),
        patient_fields=patient_fields,
        weight_loss=weight_loss,
        rep_name=rep_name,
        unmapped_fields=mapper.unmapped(fields),
    )


def _apply_fields(patient: Patient, values: dict[str, Any]) -> None:
    for key, value in values.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool) and not value and getattr(patient, key):
            # A later form without the consent box does not revoke consent.
            continue
        setattr(patient, key, value)


def _upsert_weight_loss_intake(patient: Patient, data: dict[str, Any]) -> None:
    intake = patient.weight_loss_intake
    if intake is None:
        intake = WeightLossIntake()
        patient.weight_loss_intake = intake
    for key, value in data.items():
        if value is None or value == [] or value == "":
            continue
        setattr(intake, key, value)


def apply_submission(db: Session, submission: IntakeSubmission) -> tuple[Patient, bool]:
    """Create or update the patient for a mapped submission, keyed on e-mail."""
    patient = find_patient_by_email(db, submission.email)
    created = patient is None
    before = None
    if created:
        patient = Patient(
            email=submission.email,
            membership_hashtags=list(submission.hashtags),
            assigned_rep=submission.rep_name if submission.is_rep_form else None,
            rep_form_submission=submission.is_rep_form,
            consent_date=datetime.now(timezone.utc),
            heyflow_submission_id=submission.submission_id,
        )
        _apply_fields(patient, submission.patient_fields)
        insert_patient(db, patient)
    else:
        before = snapshot_model(patient)
        _apply_fields(patient, submission.patient_fields)
        patient.membership_hashtags = merge_hashtags(
            patient.membership_hashtags, submission.hashtags
        )
        if not patient.assigned_rep and submission.is_rep_form and submission.rep_name:
            patient.assigned_rep = submission.rep_name
        patient.rep_form_submission = bool(patient.rep_form_submission or submission.is_rep_form)
        if submission.submission_id:
            patient.heyflow_submission_id = submission.submission_id

    if submission.weight_loss is not None:
        _upsert_weight_loss_intake(patient, submission.weight_loss)

    db.flush()
    log_event(
        db,
        actor=None,
        action="patient.created" if created else "patient.intake_updated",
        entity_type="patient",
        entity_id=str(patient.id),
        origin="heyflow",
        before_data=before,
        after_obj=patient,
    )
    return patient, created


def process_heyflow_event(db: Session, event: WebhookEvent) -> Patient:
    submission = map_submission(event.payload)
    patient, created = apply_submission(db, submission)
    event.patient_id = patient.id
    event.unmapped_fields = submission.unmapped_fields
    if submission.unmapped_fields:
        logger.info(
            "HeyFlow event %s has %s unmapped fields",
            event.id,
            len(submission.unmapped_fields),
        )
    logger.info(
        "HeyFlow event %s %s patient %s",
        event.id,
        "created" if created else "updated",
        patient.patient_id,
    )
    return patient


def intake_display_fields(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Render a stored submission as ordered ``{label, value}`` pairs."""
    items: list[dict[str, Any]] = []
    raw_fields = payload.get("fields")
    if isinstance(raw_fields, list):
        for item in raw_fields:
            if not isinstance(item, dict):
                continue
            label = item.get("label") or item.get("variable") or item.get("name") or item.get("id")
            if label:
                items.append({"label": str(label), "value": _answer(item)})
        if items:
            return items
    try:
        fields = extract_fields(payload)
    except HeyFlowPayloadError:
        return []
    return [{"label": key, "value": value} for key, value in fields.items()]
