"""
Read-only diagnostics for boot failures.

Exposes:
- ProbeLibrary: the fixed, ordered probe catalog.
- Scanner: runs probes and normalizes findings.
- Verifier: re-probes what a tier claimed to fix.
"""

from .probes import Probe, ProbeContext, ProbeLibrary, ProbePhase
from .scanner import Scanner
from .verifier import VerificationReport, Verifier

__all__ = [
    "Probe",
    "ProbeContext",
    "ProbeLibrary",
    "ProbePhase",
    "Scanner",
    "VerificationReport",
    "Verifier",
]
