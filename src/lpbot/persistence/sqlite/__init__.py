from lpbot.persistence.sqlite.audit_repo import SqliteAuditRepo
from lpbot.persistence.sqlite.capital_repo import SqliteCapitalRepo
from lpbot.persistence.sqlite.trades_repo import SqliteTradesRepo

__all__ = ["SqliteCapitalRepo", "SqliteTradesRepo", "SqliteAuditRepo"]
