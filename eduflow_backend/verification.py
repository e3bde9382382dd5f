import io
import csv
import json

from flask import Blueprint, current_app, jsonify, request
from pymongo import DESCENDING

from .auth import auth_required
from .certificates import certificate_hash
from .errors import NotFoundError, ValidationError
from .helpers import get_chain, get_store, json_body, pagination_args, paginated_response
from .models import ISSUED, VERIFICATION_METHODS, certificate_summary, new_verification_record, text_value

bp = Blueprint("verification", __name__, url_prefix="/api/verify")


def _strip_0x(value):
    value = str(value or "").lower()
    return value[2:] if value.startswith("0x") else value


def confirm_on_chain(chain, certificate, expected_tx=None):
    """Check the certificate against the ledger. Returns ``(ok, failure_reason)``.

    Fails closed: any missing data, ledger miss or adapter error is a failure.
    """
    info = certificate.get("blockchainInfo") or {}
    tx_hash = info.get("transactionHash")
    number = certificate["certificateNumber"]
    if not tx_hash:
        current_app.logger.error("Certificate %s has no blockchain info", number)
        return False, "certificate has no blockchain record"
    if expected_tx and _strip_0x(expected_tx) != _strip_0x(tx_hash):
        current_app.logger.warning("QR transaction hash mismatch for certificate %s", number)
        return False, "QR code does not match the certificate's ledger record"

    try:
        transaction = chain.get_transaction(tx_hash)
        receipt = chain.get_transaction_receipt(tx_hash) if transaction else None
    except Exception as e:
        current_app.logger.error("Ledger lookup for %s failed: %s", tx_hash, e, exc_info=e)
        return False, "ledger lookup failed"

    if not transaction:
        current_app.logger.error("Transaction %s not found on chain", tx_hash)
        return False, "transaction not found on chain"
    if receipt is not None and not receipt.get("status"):
        return False, "ledger transaction failed"

    ledger_input = transaction.get("input")
    if _strip_0x(ledger_input) != certificate_hash(certificate):
        current_app.logger.warning("Content hash mismatch for certificate %s", number)
        return False, "certificate content does not match the ledger record"
    return True, None


def run_verification(store, chain, certificate, verifier, method, context, expected_tx=None):
    """Verify one resolved certificate and write its audit record.

    Every call appends exactly one VerificationRecord, whatever the outcome.
    """
    if certificate["status"] != ISSUED:
        is_verified, reason = False, f"certificate status is {certificate['status']}"
    else:
        is_verified, reason = confirm_on_chain(chain, certificate, expected_tx)

    record = new_verification_record(certificate, verifier, method, is_verified, reason, context)
    store.insert("verification_records", record)

    if is_verified and not certificate.get("isVerified"):
        store.update("certificates", {"id": certificate["id"], "isVerified": False}, {"isVerified": True})
        certificate["isVerified"] = True
    if not is_verified:
        current_app.logger.warning("Verification of %s failed: %s", certificate["certificateNumber"], reason)
    return record, is_verified, reason


def request_context(body):
    return {
        "purpose": body.get("purpose"),
        "remarks": body.get("remarks"),
        "ipAddress": request.remote_addr,
        "userAgent": request.headers.get("User-Agent"),
    }


def verification_response(certificate, record, is_verified, reason):
    if certificate["status"] != ISSUED:
        raise ValidationError(f"Certificate status is {certificate['status']}, not valid")
    body = {
        "success": True,
        "isVerified": is_verified,
        "certificate": certificate_summary(certificate),
        "blockchainInfo": certificate.get("blockchainInfo"),
        "verificationRecord": {"id": record["id"], "timestamp": record["createdAt"]},
    }
    if reason:
        body["reason"] = reason
    return jsonify(body)


def find_by_number(store, number):
    certificate = store.find_one("certificates", {"certificateNumber": str(number).strip()})
    if not certificate:
        raise NotFoundError("Certificate not found or invalid number")
    return certificate


def find_by_personal_info(store, student_name, student_id_number, school_name):
    matches = store.find(
        "certificates",
        {"studentName": student_name, "studentIdNumber": student_id_number, "schoolName": school_name},
        sort=[("createdAt", DESCENDING)],
    )
    if not matches:
        raise NotFoundError("No matching certificate found")
    return next((c for c in matches if c["status"] == ISSUED), matches[0])


def parse_qr_data(qr_data):
    """``(certificate_number, transaction_hash)`` from a scanned QR payload.

    Accepts the JSON object our QR codes carry or a bare certificate number.
    """
    if isinstance(qr_data, dict):
        payload = qr_data
    else:
        text = str(qr_data or "").strip()
        if not text:
            raise ValidationError("qrData is required")
        if not text.startswith("{"):
            return text, None
        try:
            payload = json.loads(text)
        except ValueError:
            raise ValidationError("qrData is not a valid certificate QR payload")
    number = payload.get("certificateNumber") if isinstance(payload, dict) else None
    if not number:
        raise ValidationError("qrData does not contain a certificate number")
    return str(number), payload.get("transactionHash")


def batch_numbers():
    """Certificate numbers from a JSON body or an uploaded CSV file."""
    if "file" in request.files:
        stream = io.StringIO(request.files["file"].stream.read().decode("utf-8-sig"))
        reader = csv.DictReader(stream)
        numbers = []
        for row in reader:
            value = row.get("certificateNumber")
            if value is None and reader.fieldnames:
                value = row.get(reader.fieldnames[0])
            if value and value.strip():
                numbers.append(value.strip())
        return numbers, request.form.to_dict()

    body = json_body()
    numbers = body.get("certificateNumbers")
    if not isinstance(numbers, list):
        raise ValidationError("certificateNumbers must be a list")
    return [str(n).strip() for n in numbers if str(n).strip()], body


@bp.route("/certificate-number", methods=["POST"])
@auth_required("enterprise")
def verify_by_certificate_number():
    body = json_body()
    if not body.get("certificateNumber"):
        raise ValidationError("certificateNumber is required")
    store = get_store()
    certificate = find_by_number(store, text_value(body["certificateNumber"], "certificateNumber"))
    record, is_verified, reason = run_verification(
        store, get_chain(), certificate, request.user, "certificateNumber", request_context(body)
    )
    return verification_response(certificate, record, is_verified, reason)


@bp.route("/personal-info", methods=["POST"])
@auth_required("enterprise")
def verify_by_personal_info():
    body = json_body()
    fields = ("studentName", "studentIdNumber", "schoolName")
    missing = [f for f in fields if not body.get(f)]
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")
    store = get_store()
    student_name, id_number, school_name = (text_value(body[f], f) for f in fields)
    certificate = find_by_personal_info(store, student_name, id_number, school_name)
    record, is_verified, reason = run_verification(
        store, get_chain(), certificate, request.user, "personalInfo", request_context(body)
    )
    return verification_response(certificate, record, is_verified, reason)


@bp.route("/qr-code", methods=["POST"])
@auth_required("enterprise")
def verify_by_qr_code():
    body = json_body()
    number, tx_hash = parse_qr_data(body.get("qrData"))
    store = get_store()
    certificate = find_by_number(store, number)
    record, is_verified, reason = run_verification(
        store, get_chain(), certificate, request.user, "qrCode", request_context(body), expected_tx=tx_hash
    )
    return verification_response(certificate, record, is_verified, reason)


@bp.route("/batch", methods=["POST"])
@auth_required("enterprise")
def verify_batch():
    numbers, options = batch_numbers()
    if not numbers:
        raise ValidationError("No certificate numbers to verify")
    limit = current_app.config["BATCH_VERIFY_LIMIT"]
    if len(numbers) > limit:
        raise ValidationError(f"Batch verification supports at most {limit} records")

    store, chain = get_store(), get_chain()
    context = request_context(options)
    results = []
    for number in numbers:
        certificate = store.find_one("certificates", {"certificateNumber": number})
        if not certificate:
            results.append({"certificateNumber": number, "found": False, "isVerified": False,
                            "message": "Certificate not found"})
            continue
        record, is_verified, reason = run_verification(store, chain, certificate, request.user, "batch", context)
        results.append({
            "certificateNumber": number,
            "found": True,
            "status": certificate["status"],
            "isVerified": is_verified,
            "message": reason,
            "verificationRecordId": record["id"],
        })

    summary = {
        "total": len(results),
        "verified": sum(1 for r in results if r["isVerified"]),
        "failed": sum(1 for r in results if r["found"] and not r["isVerified"]),
        "notFound": sum(1 for r in results if not r["found"]),
    }
    current_app.logger.info("Batch verification by %s: %s", request.user["id"], summary)
    return jsonify({"success": True, "summary": summary, "data": results})


@bp.route("/history", methods=["GET"])
@auth_required("enterprise")
def history():
    page, limit, skip = pagination_args()
    query = {"verifierId": request.user["id"]}
    method = request.args.get("method")
    if method:
        if method not in VERIFICATION_METHODS:
            raise ValidationError(f"method must be one of: {', '.join(VERIFICATION_METHODS)}")
        query["verificationMethod"] = method
    result = request.args.get("result")
    if result == "true":
        query["verificationResult"] = True
    elif result == "false":
        query["verificationResult"] = False

    store = get_store()
    records = store.find("verification_records", query, sort=[("createdAt", DESCENDING)], skip=skip, limit=limit)
    for record in records:
        certificate = store.find_one("certificates", {"id": record["certificateId"]})
        record["certificate"] = {
            "certificateNumber": certificate["certificateNumber"],
            "studentName": certificate["studentName"],
            "schoolName": certificate["schoolName"],
            "certificateType": certificate["certificateType"],
        } if certificate else None
    return paginated_response(records, store.count("verification_records", query), page, limit)
