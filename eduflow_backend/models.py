"""Document shapes and vocabularies shared by the services."""
import enum
import datetime

from .errors import ValidationError
from .storage import new_id, utcnow_iso

ROLES = ("school", "student", "enterprise", "regulator")

CERTIFICATE_TYPES = ("diploma", "degree", "certification", "transcript")

PENDING = "pending"
ISSUED = "issued"
REVOKED = "revoked"
CERTIFICATE_STATUSES = (PENDING, ISSUED, REVOKED)

TX_CERTIFICATE_ISSUE = "certificateIssue"
TX_CERTIFICATE_VERIFY = "certificateVerify"
TX_CERTIFICATE_REVOKE = "certificateRevoke"
TX_OTHER = "other"
TRANSACTION_TYPES = (TX_CERTIFICATE_ISSUE, TX_CERTIFICATE_VERIFY, TX_CERTIFICATE_REVOKE, TX_OTHER)

VERIFICATION_METHODS = ("certificateNumber", "personalInfo", "qrCode", "batch")

NODE_TYPES = ("consensus", "observer")
NODE_STATUSES = ("active", "inactive", "syncing")

# Fields that make up a certificate's content hash, in canonical order
CANONICAL_CERTIFICATE_FIELDS = (
    "certificateNumber",
    "studentName",
    "studentIdNumber",
    "schoolName",
    "certificateType",
    "major",
    "degree",
    "issueDate",
    "graduationDate",
)


class EntityKind(str, enum.Enum):
    CERTIFICATE = "Certificate"
    USER = "User"
    VERIFICATION_RECORD = "VerificationRecord"


def entity_ref(kind, entity_id):
    return {"kind": EntityKind(kind).value, "id": entity_id}


def parse_date(value, field, required=False):
    """Normalise a client-supplied date to ``YYYY-MM-DD``."""
    if value in (None, ""):
        if required:
            raise ValidationError(f"{field} is required")
        return None
    text = text_value(value, field)
    try:
        if len(text) == 10:
            return datetime.date.fromisoformat(text).isoformat()
        # full ISO timestamps as sent by browsers, e.g. 2024-07-01T00:00:00.000Z
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return datetime.datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format")


def text_value(value, field):
    """A scalar request value as a stripped string; objects and lists are rejected."""
    if isinstance(value, (dict, list)):
        raise ValidationError(f"{field} must be a string")
    return str(value).strip()


def require_fields(body, fields):
    missing = [f for f in fields if body.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")


def new_user(username, email, password_hash, role, **profile):
    return {
        "id": new_id(),
        "username": username,
        "email": email,
        "password": password_hash,
        "role": role,
        "fullName": profile.get("fullName"),
        "mobile": profile.get("mobile"),
        "organization": profile.get("organization"),
        "title": profile.get("title"),
        "isActive": True,
        "lastLogin": None,
        "settings": {},
        "createdAt": utcnow_iso(),
    }


def public_user(user):
    _u = user.copy()
    _u.pop("password", None)
    _u.pop("settings", None)
    return _u


def certificate_summary(certificate):
    """The part of a certificate shown to verifiers."""
    return {key: certificate.get(key) for key in CANONICAL_CERTIFICATE_FIELDS}


def new_transaction(receipt, sender, to, data, transaction_type, related=None):
    return {
        "id": new_id(),
        "transactionHash": receipt["transactionHash"],
        "blockNumber": receipt["blockNumber"],
        "blockHash": receipt["blockHash"],
        "timestamp": receipt["timestamp"],
        "from": sender,
        "to": to,
        "value": "0",
        "gas": receipt.get("gasUsed"),
        "gasPrice": "0",
        "input": data,
        "status": "success",
        "transactionType": transaction_type,
        "relatedEntity": related,
        "createdAt": utcnow_iso(),
    }


def new_verification_record(certificate, verifier, method, result, failure_reason=None, context=None):
    context = context or {}
    now = utcnow_iso()
    return {
        "id": new_id(),
        "certificateId": certificate["id"],
        "verifierId": verifier["id"],
        "verificationMethod": method,
        "verificationResult": bool(result),
        "verificationDate": now,
        "purpose": context.get("purpose"),
        "remarks": context.get("remarks"),
        "failureReason": failure_reason,
        "ipAddress": context.get("ipAddress"),
        "userAgent": context.get("userAgent"),
        "blockchainInfo": dict(certificate["blockchainInfo"]) if certificate.get("blockchainInfo") else None,
        "createdAt": now,
    }
