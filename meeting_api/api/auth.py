from __future__ import annotations

from fastapi import APIRouter, Depends

from ..security import AuthUser, IdentityClient, get_bearer_token, get_current_user, get_identity

router = APIRouter(tags=["auth"])


@router.get("/me")
def read_me(user: AuthUser = Depends(get_current_user)) -> dict:
    return {"user": user.model_dump()}


@router.post("/logout")
def logout(
    user: AuthUser = Depends(get_current_user),
    token: str = Depends(get_bearer_token),
    identity: IdentityClient = Depends(get_identity),
) -> dict:
    # the client also clears its own session
    identity.sign_out(token)
    return {"message": "Logged out successfully"}
