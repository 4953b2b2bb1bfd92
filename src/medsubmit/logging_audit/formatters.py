"""Custom log formatters for MedSubmit.

This module provides specialized formatters for logging, including PII redaction.
"""

import logging
import re
from typing import List, Tuple


class PIIRedactingFormatter(logging.Formatter):
    """Formatter that redacts patient identifiers and contact data from log messages.

    Attributes:
        redact_pii: Whether to enable PII redaction
        patterns: List of (regex_pattern, replacement_text) tuples for redaction

    Example:
        >>> formatter = PIIRedactingFormatter(redact_pii=True)
        >>> handler = logging.StreamHandler()
        >>> handler.setFormatter(formatter)
    """

    def __init__(
        self,
        fmt: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt: str | None = None,
        redact_pii: bool = False,
    ) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.redact_pii = redact_pii

        self.patterns: List[Tuple[re.Pattern[str], str]] = [
            # Romanian personal numeric code (CNP): 13 digits starting with 1-9
            (re.compile(r"\b[1-9]\d{12}\b"), "[CNP-REDACTED]"),
            # patient_id=abc, patientId: 'abc'
            (
                re.compile(r"(patient_?[iI]d)([=:]\s*)[\"']?([^\s\"',|]+)[\"']?"),
                r"\1\2[PATIENT-REDACTED]",
            ),
            (re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"), "[EMAIL-REDACTED]"),
            (re.compile(r"name=[\"']?([^\"'|]+)[\"']?"), "name=[NAME-REDACTED]"),
        ]

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional PII redaction."""
        original = super().format(record)

        if self.redact_pii:
            for pattern, replacement in self.patterns:
                original = pattern.sub(replacement, original)

        return original
