import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from creditledger.core.config import get_settings
from creditledger.models.account import Account
from creditledger.models.agent import Agent, AgentAccess
from creditledger.models.audit_log import AuditLog
from creditledger.models.credit_package import CreditPackage
from creditledger.models.credit_purchase import CreditPurchase
from creditledger.models.credit_transaction import CreditTransaction
from creditledger.models.execution import Execution

DOCUMENT_MODELS = [
    Account,
    Agent,
    AgentAccess,
    CreditPackage,
    CreditPurchase,
    CreditTransaction,
    Execution,
    AuditLog,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> AsyncIOMotorClient:
    settings = get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client
