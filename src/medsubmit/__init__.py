"""MedSubmit - regulated batch submission of medical reports to the government compliance API."""

__version__ = "1.0.0"
