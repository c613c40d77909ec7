import pytest
from starlette.requests import Request

from creditledger.core.audit import AuditContext, record_audit
from creditledger.core.config import get_settings
from creditledger.ledger.memory import MemoryLedgerStore

pytestmark = pytest.mark.asyncio


class FailingAuditStore(MemoryLedgerStore):
    async def append_audit(self, entry):
        raise RuntimeError("audit collection unavailable")


async def test_audit_write_failure_is_swallowed():
    await record_audit(FailingAuditStore(), "user-1", "login", "user", "user-1")


def _request(headers, client=("10.0.0.1", 5000)):
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": headers,
            "client": client,
            "query_string": b"",
        }
    )


async def test_audit_entry_captures_request_context(monkeypatch):
    monkeypatch.setattr(get_settings(), "trusted_proxies_raw", "10.0.0.1")
    store = MemoryLedgerStore()
    request = _request([(b"x-forwarded-for", b"203.0.113.5, 10.0.0.1"), (b"user-agent", b"pytest")])
    await record_audit(store, None, "payment", "payment", "pay_1", {"amount": 500}, AuditContext.from_request(request))
    [entry] = store.audit_log
    assert entry.actor_id is None
    assert entry.ip_address == "203.0.113.5"
    assert entry.user_agent == "pytest"
    assert entry.details == {"amount": 500}


async def test_audit_ignores_forwarded_for_from_untrusted_peer():
    request = _request([(b"x-forwarded-for", b"203.0.113.5")])
    assert AuditContext.from_request(request).ip_address == "10.0.0.1"
