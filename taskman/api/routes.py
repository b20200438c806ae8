from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Path

from taskman.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    SignupRequest,
    SignupResponse,
    TaskCreateRequest,
    TaskMutationResponse,
    TaskResponse,
    TaskUpdateRequest,
    UserResponse,
)
from taskman.logging import get_correlation_id
from taskman.service.auth import AuthOutcome
from taskman.service.runtime import get_runtime

router = APIRouter()


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return envelope


async def get_user(authorization: Optional[str] = Header(None)) -> AuthOutcome:
    """Authentication gate for protected routes.

    Rejections surface as 401 (or 404 when the token's user was deleted) with
    the rejection reason in ``error.details.reason``.
    """
    runtime = get_runtime()
    outcome = await runtime.auth.authenticate(authorization)
    outcome.raise_for_failure()
    return outcome


@router.get("/", response_model=Envelope)
async def welcome():
    return _ok(MessageResponse(message="Welcome to Task Management System API"))


@router.post("/users/signup", response_model=Envelope, status_code=201, tags=["users"])
async def signup(body: SignupRequest):
    """Register a new user.

    Raises:
        409: If a user with this email already exists
    """
    runtime = get_runtime()
    user = await runtime.auth.signup(body.username, body.email, body.password)
    return _ok(
        SignupResponse(
            message="user created successfully", user=UserResponse.from_user(user)
        )
    )


@router.post("/users/login", response_model=Envelope, tags=["users"])
async def login(body: LoginRequest):
    """Exchange email and password for a bearer token.

    Unknown email and wrong password fail identically with 401.
    """
    runtime = get_runtime()
    token = await runtime.auth.login(body.email, body.password)
    return _ok(
        LoginResponse(token=token, expires_at=runtime.tokens.unverified_expiry(token))
    )


@router.post("/users/logout", response_model=Envelope, tags=["users"])
async def logout(principal: AuthOutcome = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.token, principal.claims.expires_at)
    return _ok(MessageResponse(message="user logged out successfully"))


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def me(principal: AuthOutcome = Depends(get_user)):
    return _ok(UserResponse.from_user(principal.user))


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(body: TaskCreateRequest, principal: AuthOutcome = Depends(get_user)):
    runtime = get_runtime()
    task = runtime.tasks.create_task(principal.user.id, body.model_dump())
    return _ok(
        TaskMutationResponse(
            message="task created successfully", task=TaskResponse.from_task(task)
        )
    )


@router.get("/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(principal: AuthOutcome = Depends(get_user)):
    """List the caller's own tasks, oldest first."""
    runtime = get_runtime()
    tasks = runtime.tasks.list_tasks(principal.user.id)
    return _ok([TaskResponse.from_task(task) for task in tasks])


@router.get("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def get_task(
    task_id: str = Path(..., max_length=64),
    principal: AuthOutcome = Depends(get_user),
):
    runtime = get_runtime()
    task = runtime.tasks.get_task(principal.user.id, task_id)
    return _ok(TaskResponse.from_task(task))


@router.patch("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    body: TaskUpdateRequest,
    task_id: str = Path(..., max_length=64),
    principal: AuthOutcome = Depends(get_user),
):
    runtime = get_runtime()
    task = runtime.tasks.update_task(
        principal.user.id, task_id, body.model_dump(exclude_none=True)
    )
    return _ok(
        TaskMutationResponse(
            message="task updated successfully", task=TaskResponse.from_task(task)
        )
    )


@router.delete("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(
    task_id: str = Path(..., max_length=64),
    principal: AuthOutcome = Depends(get_user),
):
    runtime = get_runtime()
    task = runtime.tasks.delete_task(principal.user.id, task_id)
    return _ok(
        TaskMutationResponse(
            message="task deleted successfully", task=TaskResponse.from_task(task)
        )
    )
