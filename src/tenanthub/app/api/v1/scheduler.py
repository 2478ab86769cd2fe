"""Scheduler trigger endpoint for external cron."""

import hmac
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request

from tenanthub.app.config import get_settings
from tenanthub.app.container import Fleet
from tenanthub.control.scheduler import TaskReport
from tenanthub.core.domain import TaskKind
from tenanthub.core.errors import UnauthorizedError

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


def get_fleet(request: Request) -> Fleet:
    return request.app.state.fleet


def require_cron_secret(authorization: Annotated[str | None, Header()] = None) -> None:
    """Bearer token check. An unset secret rejects every call."""
    secret = get_settings().scheduler.cron_secret
    scheme, _, token = (authorization or "").partition(" ")
    if not secret or scheme.lower() != "bearer" or not hmac.compare_digest(token, secret):
        raise UnauthorizedError("Invalid cron secret")


@router.post(
    "/{task}",
    response_model=TaskReport,
    dependencies=[Depends(require_cron_secret)],
)
async def run_task(
    task: TaskKind,
    fleet: Annotated[Fleet, Depends(get_fleet)],
    x_trace_id: Annotated[str | None, Header()] = None,
) -> TaskReport:
    """Run one scheduler task; ``X-Trace-Id`` from the cron caller is kept."""
    return await fleet.driver.run(task, trace_id=x_trace_id)
