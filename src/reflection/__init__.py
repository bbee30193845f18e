"""Reflection: turn session transcripts into curated playbook changes."""

from .ledger import LedgerEntry, ProcessedLedger, ledger_path_for
from .orchestrator import ReflectionOrchestrator, ReflectionOutcome, orchestrate
from .reflector import DeltaProposer, Reflector, deduplicate_deltas, hash_delta
from .sessions import DirectorySessionSource, SessionContext, SessionSource
from .validate import EvidenceGate, GateResult, KeywordEvidenceGate, validate_delta

__all__ = [
    "LedgerEntry",
    "ProcessedLedger",
    "ledger_path_for",
    "ReflectionOrchestrator",
    "ReflectionOutcome",
    "orchestrate",
    "DeltaProposer",
    "Reflector",
    "deduplicate_deltas",
    "hash_delta",
    "DirectorySessionSource",
    "SessionContext",
    "SessionSource",
    "EvidenceGate",
    "GateResult",
    "KeywordEvidenceGate",
    "validate_delta",
]
