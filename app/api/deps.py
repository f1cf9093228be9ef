from typing import Annotated

from fastapi import Depends, Request

from app.core.registry.orchestrator import SyncOrchestrator


# The orchestrator is built once in the app lifespan and shared by every request
def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


orchestrator_dep = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
