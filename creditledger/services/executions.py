"""Metered workflow execution: deduct first, then run. Credits are not refunded on failure."""

from typing import Any

from fastapi import status

from creditledger.core.audit import AuditAction, AuditContext, AuditResource, record_audit
from creditledger.core.exceptions import (
    InternalError,
    PaymentError,
    ResourceNotFoundError,
    store_failure_to_error,
)
from creditledger.core.logging import get_logger
from creditledger.core.security import CurrentUser
from creditledger.ledger.base import LedgerStore
from creditledger.ledger.records import ExecutionRecord, ExecutionStatus, FailureKind
from creditledger.services.workflow_engine import WorkflowEngineClient, WorkflowEngineError

log = get_logger(__name__)


async def _set_status(
    store: LedgerStore,
    execution_id: str,
    status_: ExecutionStatus,
    result: Any = None,
    error: str | None = None,
) -> None:
    try:
        await store.update_execution(execution_id, status_, result=result, error=error)
    except Exception as e:
        log.warning("execution_status_update_failed", execution_id=execution_id, status=status_.value, error=str(e))


async def run_execution(
    store: LedgerStore,
    engine: WorkflowEngineClient | None,
    user: CurrentUser,
    agent_id: str,
    inputs: dict[str, Any],
    context: AuditContext | None = None,
) -> dict[str, Any]:
    agent = await store.get_agent(agent_id)
    if agent is None or not agent.is_active:
        raise ResourceNotFoundError("Agent")
    if not agent.workflow_id:
        raise ResourceNotFoundError("Workflow configuration")
    if engine is None:
        raise InternalError(
            "Workflow engine is not configured",
            code="WORKFLOW_ENGINE_NOT_CONFIGURED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    if not await store.has_agent_access(user.id, agent.id):
        raise PaymentError("Purchase this agent before running it", code="AGENT_NOT_PURCHASED")

    cost = agent.credit_cost
    execution = await store.create_execution(user.id, agent.id, agent.workflow_id, inputs, cost)
    audit_details: dict[str, Any] = {"agent_id": agent.id, "workflow_id": agent.workflow_id, "credits": cost}

    deduction = await store.deduct_credits_atomic(user.id, cost, agent_id=agent.id, execution_id=execution.id)
    if not deduction.success:
        failure = deduction.failure
        await _set_status(store, execution.id, ExecutionStatus.FAILED, error=failure.message)
        await record_audit(
            store,
            user.id,
            AuditAction.WORKFLOW_EXECUTION,
            AuditResource.WORKFLOW,
            execution.id,
            {**audit_details, "status": ExecutionStatus.FAILED.value, "error": failure.message},
            context,
        )
        log.info("execution_rejected", user_id=user.id, agent_id=agent.id, reason=failure.kind.value)
        if failure.kind is FailureKind.INSUFFICIENT_CREDITS:
            raise PaymentError(
                "Insufficient credits to execute this workflow",
                code="INSUFFICIENT_CREDITS",
                details=failure.detail,
            )
        raise store_failure_to_error(failure)

    remaining = deduction.new_balance
    await _set_status(store, execution.id, ExecutionStatus.RUNNING)
    log.info("execution_started", execution_id=execution.id, agent_id=agent.id, credits=cost, remaining=remaining)

    try:
        result = await engine.run(agent.workflow_id, inputs)
    except WorkflowEngineError as e:
        await _set_status(store, execution.id, ExecutionStatus.FAILED, error=str(e))
        await record_audit(
            store,
            user.id,
            AuditAction.WORKFLOW_EXECUTION,
            AuditResource.WORKFLOW,
            execution.id,
            {**audit_details, "status": ExecutionStatus.FAILED.value, "error": str(e)},
            context,
        )
        log.error("execution_failed", execution_id=execution.id, agent_id=agent.id, error=str(e))
        raise InternalError(
            "Workflow execution failed",
            code="EXECUTION_FAILED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"execution_id": execution.id, "credits_used": cost, "remaining_credits": remaining},
        ) from e

    await _set_status(store, execution.id, ExecutionStatus.SUCCESS, result=result)
    await record_audit(
        store,
        user.id,
        AuditAction.WORKFLOW_EXECUTION,
        AuditResource.WORKFLOW,
        execution.id,
        {**audit_details, "status": ExecutionStatus.SUCCESS.value},
        context,
    )
    log.info("execution_succeeded", execution_id=execution.id, agent_id=agent.id)
    return {
        "success": True,
        "data": {
            "execution_id": execution.id,
            "result": result,
            "credits_used": cost,
            "remaining_credits": remaining,
        },
    }


async def get_execution_for(store: LedgerStore, user: CurrentUser, execution_id: str) -> ExecutionRecord:
    """Caller's own execution; other accounts' executions are reported as missing."""
    execution = await store.get_execution(execution_id)
    if execution is None or execution.account_id != user.id:
        raise ResourceNotFoundError("Execution")
    return execution
