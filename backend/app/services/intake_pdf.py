from __future__ import annotations

from io import BytesIO
from textwrap import wrap
from typing import Any

from reportlab.lib.pagesizes import LETTER
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from app.models.patient import Patient

CLINIC_NAME = "EONMeds"


def build_intake_pdf(patient: Patient, fields: list[dict[str, Any]]) -> bytes:
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=LETTER)
    pdf.setTitle("Patient Intake Form")
    width, height = LETTER
    left = 15 * mm
    top = height - 15 * mm
    y = top

    pdf.setFont("Helvetica-Bold", 20)
    pdf.drawString(left, y, CLINIC_NAME)
    y -= 10 * mm
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawString(left, y, "Patient Intake Form")
    y -= 6 * mm
    pdf.setFont("Helvetica", 9)
    submitted = patient.consent_date.date().isoformat() if patient.consent_date else "unknown"
    pdf.drawString(left, y, f"Submitted via HeyFlow on {submitted}")
    y -= 10 * mm

    y = _draw_section(pdf, left, y, top, "Consent Agreements", _consent_lines(patient))
    y = _draw_section(pdf, left, y, top, "Patient Information", _patient_lines(patient))
    intake = patient.weight_loss_intake
    if intake is not None:
        y = _draw_section(pdf, left, y, top, "Weight Loss Goals", _weight_loss_lines(intake))
    answers = [f"{item['label']}: {_format_value(item.get('value'))}" for item in fields]
    if answers:
        _draw_section(pdf, left, y, top, "Form Answers", answers)

    pdf.save()
    return buffer.getvalue()


def _format_value(value: Any) -> str:
    if value is None or value == "":
        return "-"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, list):
        return ", ".join(str(item) for item in value) or "-"
    return str(value)


def _consent_lines(patient: Patient) -> list[str]:
    return [
        f"Treatment consent: {'Accepted' if patient.consent_treatment else 'Not accepted'}",
        f"Telehealth consent: {'Accepted' if patient.consent_telehealth else 'Not accepted'}",
    ]


def _patient_lines(patient: Patient) -> list[str]:
    street = " ".join(
        part for part in [patient.address_house, patient.address_street] if part
    )
    if patient.apartment_number:
        street = f"{street} #{patient.apartment_number}".strip()
    locality = " ".join(part for part in [patient.city, patient.state, patient.zip] if part)
    height = "-"
    if patient.height_inches:
        height = f"{patient.height_inches // 12}' {patient.height_inches % 12}\""
    return [
        f"Patient ID: {patient.patient_id}",
        f"Name: {patient.full_name}",
        f"Date of birth: {_format_value(patient.date_of_birth)}",
        f"Gender: {_format_value(patient.gender)}",
        f"Email: {patient.email}",
        f"Phone: {_format_value(patient.phone)}",
        f"Address: {street or patient.address or '-'}",
        f"City/State/Zip: {locality or '-'}",
        f"Height: {height}",
        f"Weight: {_format_value(patient.weight_lbs)} lbs",
        f"BMI: {_format_value(patient.bmi)}",
    ]


def _weight_loss_lines(intake) -> list[str]:
    return [
        f"Target weight: {_format_value(intake.target_weight_lbs)} lbs",
        f"Timeline: {_format_value(intake.weight_loss_timeline)}",
        f"Previous attempts: {_format_value(intake.previous_weight_loss_attempts)}",
        f"Exercise: {_format_value(intake.exercise_frequency)}",
        f"Diet restrictions: {_format_value(intake.diet_restrictions)}",
        f"Diabetes: {_format_value(intake.diabetes_type)}",
        f"Thyroid condition: {_format_value(intake.thyroid_condition)}",
        f"Heart conditions: {_format_value(intake.heart_conditions)}",
    ]


def _draw_section(
    pdf: canvas.Canvas, left: float, y: float, top: float, title: str, lines: list[str]
) -> float:
    if y < 40 * mm:
        pdf.showPage()
        y = top
    pdf.setFont("Helvetica-Bold", 12)
    pdf.drawString(left, y, title)
    y -= 7 * mm
    pdf.setFont("Helvetica", 10)
    for line in lines:
        for chunk in wrap(line, width=100) or [""]:
            if y < 20 * mm:
                pdf.showPage()
                y = top
                pdf.setFont("Helvetica", 10)
            pdf.drawString(left + 4 * mm, y, chunk)
            y -= 5 * mm
    return y - 5 * mm
