"""Report anonymization for government submission.

Turns finalized reports into a government-safe document: patient identifiers
are replaced by a salted SHA-256 hash, only whitelisted medical fields are
kept, and a checksum is computed over the canonical JSON serialization of the
document before it is encrypted.

Pure and stateless apart from the configured salt; no I/O.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from medsubmit.models.report import FinalizedReport
from medsubmit.utils.exceptions import ValidationError
from medsubmit.utils.timeutils import to_iso

logger = logging.getLogger(__name__)

# Fields every report must carry to be submitted
REQUIRED_FIELDS = ("id", "patient_id", "diagnosis", "created_at", "gdpr_consent", "doctor_id")

# Keys of each anonymized report entry; nothing else is ever sent
WHITELISTED_FIELDS = (
    "reportId",
    "patientHash",
    "diagnosis",
    "prescribedMedications",
    "treatmentDate",
    "consultationType",
    "doctorId",
    "doctorName",
    "gdprConsent",
    "finalizedAt",
)


@dataclass(frozen=True)
class PreparedPayload:
    """Anonymized document ready for encryption.

    Attributes:
        document: Anonymized document (reports + metadata)
        canonical: Canonical JSON bytes the checksum is computed over
        checksum: SHA-256 hex digest of ``canonical``
        report_count: Number of anonymized reports
    """

    document: Dict[str, Any]
    canonical: bytes
    checksum: str
    report_count: int


def hash_patient_id(patient_id: str, salt: str = "") -> str:
    """Return a stable one-way hash of a patient identifier.

    Example:
        >>> hash_patient_id("p-1") == hash_patient_id("p-1")
        True
    """
    digest = hashlib.sha256(f"{salt}:{patient_id}".encode("utf-8")).hexdigest()
    return f"ph_{digest}"


def canonical_json(document: Any) -> bytes:
    """Serialize ``document`` deterministically (sorted keys, no whitespace)."""
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def compute_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _missing_fields(report: FinalizedReport) -> List[str]:
    missing = []
    if not report.id:
        missing.append("id")
    if not report.patient_id:
        missing.append("patient_id")
    if report.diagnosis is None or not report.diagnosis.primary:
        missing.append("diagnosis")
    if report.created_at is None:
        missing.append("created_at")
    if report.gdpr_consent_obtained is None:
        missing.append("gdpr_consent")
    if not report.doctor_id:
        missing.append("doctor_id")
    return missing


def validate_reports(reports: Sequence[FinalizedReport]) -> None:
    """Check that every report can be anonymized.

    All problems are collected before raising so the operator sees every
    malformed report at once.

    Raises:
        ValidationError: If the list is empty or any report misses a required field
    """
    if not reports:
        raise ValidationError("Cannot prepare a submission without reports")

    problems = []
    for index, report in enumerate(reports):
        missing = _missing_fields(report)
        if missing:
            label = report.id or f"#{index}"
            problems.append(f"report {label} is missing {', '.join(missing)}")

    if problems:
        raise ValidationError("Malformed reports: " + "; ".join(problems))


def anonymize_report(report: FinalizedReport, salt: str = "") -> Dict[str, Any]:
    """Return the whitelisted, anonymized form of one report."""
    diagnosis = report.diagnosis
    return {
        "reportId": report.id,
        "patientHash": hash_patient_id(report.patient_id, salt),
        "diagnosis": {
            "primary": diagnosis.primary,
            "secondary": list(diagnosis.secondary),
            "icdCodes": list(diagnosis.icd_codes),
        },
        "prescribedMedications": [
            {
                "name": med.name,
                "dosage": med.dosage,
                "frequency": med.frequency,
                "duration": med.duration,
            }
            for med in report.prescribed_medications
        ],
        "treatmentDate": to_iso(report.created_at),
        "consultationType": report.consultation_type,
        "doctorId": report.doctor_id,
        "doctorName": report.doctor_name,
        "gdprConsent": bool(report.gdpr_consent_obtained),
        "finalizedAt": to_iso(report.finalized_at),
    }


class Anonymizer:
    """Prepares batches of finalized reports for encryption.

    Args:
        salt: Secret salt mixed into patient hashes

    Example:
        >>> anonymizer = Anonymizer(salt="clinic-secret")
        >>> payload = anonymizer.prepare("batch-1", "2024-05", reports)
        >>> payload.report_count
        3
    """

    def __init__(self, salt: str = "") -> None:
        self._salt = salt

    def hash_patient_id(self, patient_id: str) -> str:
        return hash_patient_id(patient_id, self._salt)

    def anonymize(self, reports: Sequence[FinalizedReport]) -> List[Dict[str, Any]]:
        validate_reports(reports)
        return [anonymize_report(report, self._salt) for report in reports]

    def prepare(self, batch_id: str, month: str, reports: Sequence[FinalizedReport]) -> PreparedPayload:
        """Validate, anonymize and checksum a batch.

        Raises:
            ValidationError: If any report is malformed; no partial payload is produced
        """
        entries = self.anonymize(reports)
        document = {
            "reports": entries,
            "metadata": {
                "batchId": batch_id,
                "month": month,
                "reportCount": len(entries),
            },
        }
        canonical = canonical_json(document)
        checksum = compute_checksum(canonical)
        logger.debug(f"Prepared batch {batch_id}: {len(entries)} reports, checksum={checksum[:12]}")
        return PreparedPayload(
            document=document,
            canonical=canonical,
            checksum=checksum,
            report_count=len(entries),
        )
