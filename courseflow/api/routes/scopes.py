"""Course and session scope API routes."""

from fastapi import APIRouter, HTTPException

from courseflow.api.deps import ActionStoreDep, PlannerDep
from courseflow.api.routes.actions import to_response
from courseflow.core.exceptions import ConflictError
from courseflow.models.action import Scope, ScopeType
from courseflow.schemas.action import ActionResponse, CopyActionsResponse, ReorderRequest
from courseflow.schemas.common import APIResponse

router = APIRouter(prefix="/scopes", tags=["scopes"])


@router.post(
    "/{scope_type}/{scope_id}/reorder",
    response_model=APIResponse[list[ActionResponse]],
)
async def reorder_actions(
    scope_type: ScopeType,
    scope_id: str,
    data: ReorderRequest,
    store: ActionStoreDep,
) -> APIResponse[list[ActionResponse]]:
    """Set the execution order of a scope's actions.

    Records already scheduled keep their fire time; the new order applies to
    records that become due together from now on.
    """
    scope = Scope(scope_type=scope_type, scope_id=scope_id)
    try:
        actions = await store.reorder(scope, data.action_ids)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    return APIResponse(data=[to_response(a) for a in actions])


@router.post(
    "/session/{session_id}/copy-from-course/{course_id}",
    response_model=APIResponse[CopyActionsResponse],
)
async def copy_course_actions(
    session_id: str,
    course_id: str,
    store: ActionStoreDep,
    planner: PlannerDep,
) -> APIResponse[CopyActionsResponse]:
    """Give a session its own copy of its course's active actions."""
    target = Scope(scope_type=ScopeType.SESSION, scope_id=session_id)
    if await store.list_by_scope(target, include_inactive=True):
        raise ConflictError(f"Session {session_id} already has flow actions")

    source = Scope(scope_type=ScopeType.COURSE, scope_id=course_id)
    created = await planner.copy_scope_actions(source, target)
    return APIResponse(data=CopyActionsResponse(actions=[to_response(a) for a in created]))
