from creditledger.models.account import Account
from creditledger.models.agent import Agent, AgentAccess
from creditledger.models.audit_log import AuditLog
from creditledger.models.credit_package import CreditPackage
from creditledger.models.credit_purchase import CreditPurchase
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.execution import Execution

__all__ = [
    "Account",
    "Agent",
    "AgentAccess",
    "AuditLog",
    "CreditPackage",
    "CreditPurchase",
    "CreditTransaction",
    "Execution",
]
