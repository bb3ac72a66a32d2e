from typing import List

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from slowapi import Limiter
from slowapi.util import get_remote_address

from quotebroker.models.schemas import (
    AccessTokenResponse,
    ConnectionTestResponse,
    MessageResponse,
    PersonResponse,
    RefreshTokenResponse,
    SetupPersonRequest,
    SetupPersonResponse,
    TokenStatusResponse,
)
from quotebroker.services.container import ServiceContainer, get_container

router = APIRouter(prefix="/auth", tags=["authentication"])

# Setup performs a live OAuth exchange, keep it away from brute forcing
limiter = Limiter(key_func=get_remote_address)


@router.post("/setup-person", response_model=SetupPersonResponse)
@limiter.limit("5/15minutes")
async def setup_person(request: Request, payload: SetupPersonRequest,
                       services: ServiceContainer = Depends(get_container)):
    return await services.token_manager.setup_person_token(
        payload.person_name.strip(), payload.refresh_token, payload.display_name
    )


@router.post("/refresh-token/{person_name}", response_model=RefreshTokenResponse)
async def refresh_token(person_name: str, services: ServiceContainer = Depends(get_container)):
    token = await services.token_manager.refresh_access_token(person_name)
    return RefreshTokenResponse(
        success=True,
        person_name=token.person_name,
        api_server=token.api_server,
        expires_at=token.expires_at,
    )


@router.get("/token-status/{person_name}", response_model=TokenStatusResponse)
async def token_status(person_name: str, services: ServiceContainer = Depends(get_container)):
    return await services.token_manager.get_token_status(person_name)


@router.get("/access-token/{person_name}", response_model=AccessTokenResponse)
async def access_token(person_name: str, force: bool = Query(False),
                       services: ServiceContainer = Depends(get_container)):
    if force:
        return await services.token_manager.refresh_access_token(person_name)
    return await services.token_manager.get_valid_access_token(person_name)


@router.post("/test-connection/{person_name}", response_model=ConnectionTestResponse)
async def test_connection(person_name: str, services: ServiceContainer = Depends(get_container)):
    return await services.token_manager.test_connection(person_name)


@router.get("/persons", response_model=List[PersonResponse])
async def list_persons(include_inactive: bool = False, services: ServiceContainer = Depends(get_container)):
    return await run_in_threadpool(services.token_store.list_persons, not include_inactive)


@router.delete("/persons/{person_name}", response_model=MessageResponse)
async def remove_person(person_name: str, permanent: bool = Query(False),
                        services: ServiceContainer = Depends(get_container)):
    """Deactivate an identity (soft delete), or erase it with permanent=true."""
    if permanent:
        await services.token_manager.delete_person(person_name)
        return MessageResponse(message=f"Person {person_name} permanently deleted")
    await services.token_manager.deactivate_person(person_name)
    return MessageResponse(message=f"Tokens deactivated for {person_name}")
