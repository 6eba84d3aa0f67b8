from .ledger import IncidentLedger

__all__ = ["IncidentLedger"]
