import io
import json
import base64
import hashlib

import qrcode
from flask import Blueprint, current_app, jsonify, request
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from .auth import auth_required
from .blockchain import submit
from .errors import ForbiddenError, NotFoundError, ValidationError
from .helpers import get_chain, get_store, json_body, pagination_args, paginated_response
from .models import (
    CANONICAL_CERTIFICATE_FIELDS,
    CERTIFICATE_STATUSES,
    CERTIFICATE_TYPES,
    ISSUED,
    PENDING,
    REVOKED,
    TX_CERTIFICATE_ISSUE,
    TX_CERTIFICATE_REVOKE,
    TX_OTHER,
    EntityKind,
    entity_ref,
    new_transaction,
    parse_date,
    require_fields,
    text_value,
)
from .storage import new_id, utcnow_iso

bp = Blueprint("certificates", __name__, url_prefix="/api/certificates")

REQUIRED_FIELDS = ("certificateNumber", "studentId", "certificateType", "issueDate", "studentName", "studentIdNumber")


def certificate_hash(certificate):
    """sha256 over the canonical certificate fields (sorted-key JSON)."""
    data = {field: certificate.get(field) for field in CANONICAL_CERTIFICATE_FIELDS}
    return hashlib.sha256(json.dumps(data, sort_keys=True).encode("utf-8")).hexdigest()


def find_certificate(store, certificate_id):
    certificate = store.find_one("certificates", {"id": certificate_id})
    if not certificate:
        raise NotFoundError("Certificate not found")
    return certificate


def _check_owner(certificate, school):
    if certificate["schoolId"] != school["id"]:
        raise ForbiddenError("Not allowed to operate on this certificate")


def create_certificate(store, school, body):
    require_fields(body, REQUIRED_FIELDS)
    if body["certificateType"] not in CERTIFICATE_TYPES:
        raise ValidationError(f"certificateType must be one of: {', '.join(CERTIFICATE_TYPES)}")

    student = store.find_one("users", {"id": text_value(body["studentId"], "studentId")})
    if not student or student.get("role") != "student":
        raise ValidationError("studentId does not reference a student account")

    number = text_value(body["certificateNumber"], "certificateNumber")
    if store.find_one("certificates", {"certificateNumber": number}):
        raise ValidationError("certificateNumber already exists")

    now = utcnow_iso()
    certificate = {
        "id": new_id(),
        "certificateNumber": number,
        "studentId": student["id"],
        "schoolId": school["id"],
        "certificateType": body["certificateType"],
        "issueDate": parse_date(body.get("issueDate"), "issueDate", required=True),
        "expiryDate": parse_date(body.get("expiryDate"), "expiryDate"),
        "graduationDate": parse_date(body.get("graduationDate"), "graduationDate"),
        "major": body.get("major"),
        "degree": body.get("degree"),
        "studentName": text_value(body["studentName"], "studentName"),
        "studentIdNumber": text_value(body["studentIdNumber"], "studentIdNumber"),
        "schoolName": school.get("organization") or school["username"],
        "description": body.get("description"),
        "blockchainInfo": None,
        "isVerified": False,
        "status": PENDING,
        "revocationReason": None,
        "revokedAt": None,
        "createdAt": now,
        "updatedAt": now,
    }
    # A concurrent insert with the same number loses here with DuplicateKeyError
    store.insert("certificates", certificate)
    return certificate


def record_transaction(store, transaction):
    """Store the typed record of a transaction we submitted.

    The explorer may already have cached the same hash as ``other`` while the
    submission was in flight; that copy is overwritten with the typed record.
    """
    try:
        store.insert("transactions", transaction)
    except DuplicateKeyError:
        query = {"transactionHash": transaction["transactionHash"], "transactionType": TX_OTHER}
        fields = {k: v for k, v in transaction.items() if k != "id"}
        if not store.update("transactions", query, fields):
            raise
    return transaction


def issue_certificate(store, chain, school, certificate_id):
    certificate = find_certificate(store, certificate_id)
    _check_owner(certificate, school)
    if certificate["status"] != PENDING:
        raise ValidationError(f"Certificate status is {certificate['status']}, cannot issue")

    content_hash = certificate_hash(certificate)
    contract = current_app.config.get("CONTRACT_ADDRESS")
    receipt = submit(chain, school["id"], contract, "0x" + content_hash)

    blockchain_info = {
        "transactionHash": receipt["transactionHash"],
        "blockNumber": receipt["blockNumber"],
        "timestamp": receipt["timestamp"],
        "contractAddress": contract,
        "certificateHash": content_hash,
    }
    record_transaction(store, new_transaction(
        receipt, school["id"], contract, "0x" + content_hash, TX_CERTIFICATE_ISSUE,
        related=entity_ref(EntityKind.CERTIFICATE, certificate["id"]),
    ))

    changes = {"status": ISSUED, "blockchainInfo": blockchain_info, "updatedAt": utcnow_iso()}
    if not store.update("certificates", {"id": certificate["id"], "status": PENDING}, changes):
        raise ValidationError("Certificate was modified concurrently, cannot issue")
    certificate.update(changes)
    current_app.logger.info("Certificate %s issued in tx %s", certificate["certificateNumber"], receipt["transactionHash"])
    return certificate, receipt


def revoke_certificate(store, chain, school, certificate_id, reason):
    certificate = find_certificate(store, certificate_id)
    _check_owner(certificate, school)
    if certificate["status"] != ISSUED:
        raise ValidationError(f"Certificate status is {certificate['status']}, cannot revoke")

    contract = current_app.config.get("CONTRACT_ADDRESS")
    data = f"Revoke: {certificate['certificateNumber']}, Reason: {reason}"
    receipt = submit(chain, school["id"], contract, data)

    record_transaction(store, new_transaction(
        receipt, school["id"], contract, data, TX_CERTIFICATE_REVOKE,
        related=entity_ref(EntityKind.CERTIFICATE, certificate["id"]),
    ))

    now = utcnow_iso()
    changes = {"status": REVOKED, "revocationReason": reason, "revokedAt": now, "updatedAt": now}
    if not store.update("certificates", {"id": certificate["id"], "status": ISSUED}, changes):
        raise ValidationError("Certificate was modified concurrently, cannot revoke")
    certificate.update(changes)
    current_app.logger.info("Certificate %s revoked: %s", certificate["certificateNumber"], reason)
    return certificate, receipt


def certificate_query(user, status=None, certificate_type=None):
    if user["role"] == "school":
        query = {"schoolId": user["id"]}
    elif user["role"] == "student":
        query = {"studentId": user["id"]}
    else:
        raise ForbiddenError("Not allowed to list certificates")
    if status:
        if status not in CERTIFICATE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(CERTIFICATE_STATUSES)}")
        query["status"] = status
    if certificate_type:
        query["certificateType"] = certificate_type
    return query


def check_can_view(certificate, user):
    if user["role"] == "school" and certificate["schoolId"] != user["id"]:
        raise ForbiddenError("Not allowed to view this certificate")
    if user["role"] == "student" and certificate["studentId"] != user["id"]:
        raise ForbiddenError("Not allowed to view this certificate")


def create_qr_base64(data, size: int = 300) -> str:
    """Generate QR code and return as base64 data URI"""
    qr_data = json.dumps(data, sort_keys=True) if isinstance(data, dict) else str(data)

    qr = qrcode.QRCode(box_size=10, border=2)
    qr.add_data(qr_data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").convert("RGBA")
    img = img.resize((size, size))

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    img_base64 = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{img_base64}"


def qr_payload(certificate):
    return {
        "certificateNumber": certificate["certificateNumber"],
        "transactionHash": certificate["blockchainInfo"]["transactionHash"],
    }


@bp.route("", methods=["POST"])
@auth_required("school")
def create():
    certificate = create_certificate(get_store(), request.user, json_body())
    return jsonify({"success": True, "data": certificate}), 201


@bp.route("/<certificate_id>/issue", methods=["PUT"])
@auth_required("school")
def issue(certificate_id):
    certificate, receipt = issue_certificate(get_store(), get_chain(), request.user, certificate_id)
    return jsonify({
        "success": True,
        "message": "Certificate issued on chain",
        "data": {
            "certificate": certificate,
            "transactionHash": receipt["transactionHash"],
            "blockNumber": receipt["blockNumber"],
        },
    })


@bp.route("/<certificate_id>/revoke", methods=["PUT"])
@auth_required("school")
def revoke(certificate_id):
    reason = str(json_body().get("reason") or "").strip()
    certificate, receipt = revoke_certificate(get_store(), get_chain(), request.user, certificate_id, reason)
    return jsonify({
        "success": True,
        "message": "Certificate revoked",
        "data": {
            "certificate": certificate,
            "transactionHash": receipt["transactionHash"],
            "blockNumber": receipt["blockNumber"],
        },
    })


@bp.route("", methods=["GET"])
@auth_required("school", "student")
def list_certificates():
    page, limit, skip = pagination_args()
    query = certificate_query(request.user, request.args.get("status"), request.args.get("type"))
    store = get_store()
    certificates = store.find("certificates", query, sort=[("createdAt", DESCENDING)], skip=skip, limit=limit)
    return paginated_response(certificates, store.count("certificates", query), page, limit)


@bp.route("/<certificate_id>", methods=["GET"])
@auth_required("school", "student", "enterprise", "regulator")
def detail(certificate_id):
    certificate = find_certificate(get_store(), certificate_id)
    check_can_view(certificate, request.user)
    return jsonify({"success": True, "data": certificate})


@bp.route("/<certificate_id>/qrcode", methods=["GET"])
@auth_required("school", "student")
def qr_code(certificate_id):
    certificate = find_certificate(get_store(), certificate_id)
    check_can_view(certificate, request.user)
    if certificate["status"] != ISSUED:
        raise ValidationError(f"Certificate status is {certificate['status']}, no QR code available")
    payload = qr_payload(certificate)
    return jsonify({"success": True, "data": {"payload": payload, "qrCode": create_qr_base64(payload, size=200)}})
