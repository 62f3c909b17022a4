from lpbot.persistence.interfaces.audit_repo import AuditRepoProtocol, serialize_payload
from lpbot.persistence.interfaces.capital_repo import CapitalRepoProtocol
from lpbot.persistence.interfaces.store import PersistenceStore
from lpbot.persistence.interfaces.trades_repo import TradesRepoProtocol

__all__ = [
    "CapitalRepoProtocol",
    "TradesRepoProtocol",
    "AuditRepoProtocol",
    "PersistenceStore",
    "serialize_payload",
]
