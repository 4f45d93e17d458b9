from app.models.base import Base
from app.models.user import Role, User
from app.models.audit_log import AuditLog
from app.models.patient import Patient, PatientStatus, WeightLossIntake
from app.models.webhook_event import WebhookEvent, WebhookSource
from app.models.invoice import (
    Invoice,
    InvoiceItem,
    InvoicePayment,
    InvoiceStatus,
    PaymentMethod,
    PaymentStatus,
)
from app.models.soap_note import SoapNote, SoapNoteStatus
from app.models.subscription import StripeSubscription
from app.models.external_payment_mirror import ExternalPaymentMirror, MirrorMode

__all__ = [
    "Base",
    "Role",
    "User",
    "AuditLog",
    "Patient",
    "PatientStatus",
    "WeightLossIntake",
    "WebhookEvent",
    "WebhookSource",
    "Invoice",
    "InvoiceItem",
    "InvoicePayment",
    "InvoiceStatus",
    "PaymentMethod",
    "PaymentStatus",
    "SoapNote",
    "SoapNoteStatus",
    "StripeSubscription",
    "ExternalPaymentMirror",
    "MirrorMode",
]
