from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from creditledger.core.audit import AuditContext
from creditledger.core.security import CurrentUser
from creditledger.deps import get_current_user, rate_limit
from creditledger.ledger.base import LedgerStore, get_ledger_store
from creditledger.services import executions as executions_service
from creditledger.services.workflow_engine import WorkflowEngineClient, get_workflow_engine

router = APIRouter()


class RunExecutionRequest(BaseModel):
    agent_id: str = Field(min_length=1)
    inputs: dict[str, Any] = Field(default_factory=dict)


@router.post("/run", dependencies=[Depends(rate_limit("workflow"))])
async def run_execution(
    body: RunExecutionRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
    engine: WorkflowEngineClient | None = Depends(get_workflow_engine),
):
    """Deduct the agent's credit cost and run its workflow."""
    return await executions_service.run_execution(
        store, engine, user, body.agent_id, body.inputs, context=AuditContext.from_request(request)
    )


@router.get("/{execution_id}", dependencies=[Depends(rate_limit("default"))])
async def get_execution(
    execution_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: LedgerStore = Depends(get_ledger_store),
):
    execution = await executions_service.get_execution_for(store, user, execution_id)
    return execution.model_dump(mode="json")
