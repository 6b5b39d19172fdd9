"""API dependency injection."""

from typing import Annotated

from fastapi import Depends, Query

from courseflow.engine.planner import Planner
from courseflow.schemas.common import PaginationParams
from courseflow.storage.action_store import ActionStore
from courseflow.storage.auxiliary import DeadLetterQueue
from courseflow.storage.ledger import ExecutionLedger
from courseflow.storage.organization_store import OrganizationStore
from courseflow.storage.redis_client import get_redis
from courseflow.storage.subject_store import SubjectStore
from courseflow.storage.template_store import TemplateStore


def get_action_store() -> ActionStore:
    """Get action store instance."""
    return ActionStore(get_redis())


def get_ledger() -> ExecutionLedger:
    """Get execution ledger instance."""
    return ExecutionLedger(get_redis())


def get_subject_store() -> SubjectStore:
    return SubjectStore(get_redis())


def get_organization_store() -> OrganizationStore:
    return OrganizationStore(get_redis())


def get_template_store() -> TemplateStore:
    return TemplateStore(get_redis())


def get_dead_letters() -> DeadLetterQueue:
    return DeadLetterQueue(get_redis())


# Type aliases for dependency injection
ActionStoreDep = Annotated[ActionStore, Depends(get_action_store)]
LedgerDep = Annotated[ExecutionLedger, Depends(get_ledger)]
SubjectStoreDep = Annotated[SubjectStore, Depends(get_subject_store)]
OrganizationStoreDep = Annotated[OrganizationStore, Depends(get_organization_store)]
TemplateStoreDep = Annotated[TemplateStore, Depends(get_template_store)]
DeadLetterDep = Annotated[DeadLetterQueue, Depends(get_dead_letters)]


def get_planner(
    actions: ActionStoreDep,
    ledger: LedgerDep,
    subjects: SubjectStoreDep,
    organizations: OrganizationStoreDep,
) -> Planner:
    """Get planner wired to the request's stores."""
    return Planner(actions, ledger, subjects, organizations)


PlannerDep = Annotated[Planner, Depends(get_planner)]


def get_pagination(
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=20, ge=1, le=100, description="Items per page"),
) -> PaginationParams:
    """Get pagination parameters from query."""
    return PaginationParams(page=page, page_size=page_size)


PaginationDep = Annotated[PaginationParams, Depends(get_pagination)]
