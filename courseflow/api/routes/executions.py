"""Execution history API routes."""

from fastapi import APIRouter, Query

from courseflow.api.deps import ActionStoreDep, DeadLetterDep, LedgerDep, PaginationDep
from courseflow.core.exceptions import NotFoundError
from courseflow.models.execution import ExecutionRecord, ExecutionStatus
from courseflow.schemas.common import APIResponse, PaginatedResponse

router = APIRouter(tags=["executions"])


@router.get(
    "/actions/{action_id}/executions",
    response_model=PaginatedResponse[ExecutionRecord],
)
async def list_action_executions(
    action_id: str,
    ledger: LedgerDep,
    pagination: PaginationDep,
    status: ExecutionStatus | None = Query(default=None, description="Filter by status"),
) -> PaginatedResponse[ExecutionRecord]:
    """List a flow action's execution records, oldest first."""
    records = await ledger.list_for_action(action_id)
    if status is not None:
        records = [r for r in records if r.status == status]

    return PaginatedResponse(
        data=pagination.slice(records),
        total=len(records),
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get("/actions/{action_id}/summary", response_model=APIResponse[dict[str, int]])
async def action_summary(
    action_id: str,
    store: ActionStoreDep,
    ledger: LedgerDep,
) -> APIResponse[dict[str, int]]:
    """Count a flow action's executions per status."""
    if not await store.get(action_id):
        raise NotFoundError("Flow action", action_id)
    return APIResponse(data=await ledger.status_summary(action_id))


@router.get("/executions/{record_id}", response_model=APIResponse[ExecutionRecord])
async def get_execution(
    record_id: str,
    ledger: LedgerDep,
) -> APIResponse[ExecutionRecord]:
    """Get one execution record, including its last error."""
    record = await ledger.get(record_id)
    if not record:
        raise NotFoundError("Execution record", record_id)
    return APIResponse(data=record)


@router.get("/dead-letters", response_model=PaginatedResponse[ExecutionRecord])
async def list_dead_letters(
    dead_letters: DeadLetterDep,
    limit: int = Query(default=50, ge=1, le=500, description="Most recent failures to return"),
) -> PaginatedResponse[ExecutionRecord]:
    """Most recent executions that ended in failed."""
    records = await dead_letters.list(limit)
    return PaginatedResponse(
        data=records,
        total=await dead_letters.length(),
        page=1,
        page_size=min(limit, 100),
    )
