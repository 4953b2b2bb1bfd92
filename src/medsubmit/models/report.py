"""Finalized report data models.

Finalized reports are produced by the report-authoring workflow and are
read-only input to batch creation and anonymization. Fields are optional at
this level; the anonymizer decides which ones are required.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from medsubmit.utils.timeutils import from_iso, to_iso


@dataclass(frozen=True)
class Diagnosis:
    """Medical diagnosis of a report."""

    primary: Optional[str]
    secondary: List[str] = field(default_factory=list)
    icd_codes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class PrescribedMedication:
    """A single prescribed medication."""

    name: str
    dosage: str = ""
    frequency: str = ""
    duration: str = ""


@dataclass(frozen=True)
class FinalizedReport:
    """Immutable finalized medical report.

    Attributes:
        id: Report identifier
        patient_id: Patient identifier (never leaves the clinic in clear text)
        diagnosis: Medical diagnosis
        prescribed_medications: Prescribed medications
        created_at: Consultation date
        gdpr_consent_obtained: Whether GDPR consent was recorded
        doctor_id: Clinician identifier
        doctor_name: Clinician display name
        consultation_type: Consultation type / priority
        report_month: YYYY-MM the report belongs to
        finalized_at: When the report was finalized
        extra: Any other fields supplied by the authoring system
    """

    id: Optional[str]
    patient_id: Optional[str]
    diagnosis: Optional[Diagnosis]
    prescribed_medications: List[PrescribedMedication] = field(default_factory=list)
    created_at: Optional[datetime] = None
    gdpr_consent_obtained: Optional[bool] = None
    doctor_id: Optional[str] = None
    doctor_name: Optional[str] = None
    consultation_type: Optional[str] = None
    report_month: Optional[str] = None
    finalized_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    KNOWN_FIELDS = (
        "id",
        "patient_id",
        "diagnosis",
        "prescribed_medications",
        "created_at",
        "gdpr_consent",
        "doctor_id",
        "doctor_name",
        "consultation_type",
        "report_month",
        "finalized_at",
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FinalizedReport":
        """Build a report from the authoring system's JSON representation.

        ``gdpr_consent`` may be given as ``{"obtained": bool}`` or a plain bool.
        Unknown keys are kept in ``extra`` so the anonymizer can drop them.
        """
        diagnosis_data = data.get("diagnosis")
        diagnosis = None
        if isinstance(diagnosis_data, dict):
            diagnosis = Diagnosis(
                primary=diagnosis_data.get("primary"),
                secondary=list(diagnosis_data.get("secondary") or []),
                icd_codes=list(diagnosis_data.get("icd_codes") or []),
            )

        medications = [
            PrescribedMedication(
                name=med.get("name", ""),
                dosage=med.get("dosage", ""),
                frequency=med.get("frequency", ""),
                duration=med.get("duration", ""),
            )
            for med in data.get("prescribed_medications") or []
        ]

        consent = data.get("gdpr_consent")
        if isinstance(consent, dict):
            consent = consent.get("obtained")

        created_at = data.get("created_at")
        finalized_at = data.get("finalized_at")

        return cls(
            id=data.get("id"),
            patient_id=data.get("patient_id"),
            diagnosis=diagnosis,
            prescribed_medications=medications,
            created_at=from_iso(created_at) if isinstance(created_at, str) else created_at,
            gdpr_consent_obtained=consent,
            doctor_id=data.get("doctor_id"),
            doctor_name=data.get("doctor_name"),
            consultation_type=data.get("consultation_type"),
            report_month=data.get("report_month"),
            finalized_at=from_iso(finalized_at) if isinstance(finalized_at, str) else finalized_at,
            extra={k: v for k, v in data.items() if k not in cls.KNOWN_FIELDS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "patient_id": self.patient_id,
            "diagnosis": None,
            "prescribed_medications": [
                {"name": m.name, "dosage": m.dosage, "frequency": m.frequency, "duration": m.duration}
                for m in self.prescribed_medications
            ],
            "created_at": to_iso(self.created_at),
            "gdpr_consent": {"obtained": self.gdpr_consent_obtained},
            "doctor_id": self.doctor_id,
            "doctor_name": self.doctor_name,
            "consultation_type": self.consultation_type,
            "report_month": self.report_month,
            "finalized_at": to_iso(self.finalized_at),
        }
        if self.diagnosis is not None:
            data["diagnosis"] = {
                "primary": self.diagnosis.primary,
                "secondary": list(self.diagnosis.secondary),
                "icd_codes": list(self.diagnosis.icd_codes),
            }
        data.update(self.extra)
        return data
