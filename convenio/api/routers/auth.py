from fastapi import APIRouter, Depends, Request, Response
from convenio.api.schemas import LoginRequest, RegisterRequest, SelectRoleRequest, SwitchRoleRequest
from convenio.core import config
from convenio.core.database import AsyncSessionLocal
from convenio.core.errors import Unauthenticated
from convenio.core.security import (
    COOKIE_NAME, ACCESS_TOKEN_EXPIRE_MINUTES, CurrentUser, create_access_token, create_login_ticket,
    decode_access_token, get_current_user, start_session, verify_login_ticket, _token_from_request,
)
from convenio.services import affiliates, identity

router = APIRouter(prefix="/api/auth", tags=["Auth"])


def _set_session_cookie(response: Response, token: str):
    response.set_cookie(
        key=COOKIE_NAME,
        value=token,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


def _session_body(user, auth, token):
    return {
        "user": {
            "id": user.id,
            "name": user.name,
            "national_id": user.national_id,
            "roles": list(auth.roles),
            "current_role": auth.current_role,
        },
        "token": token,
        "expires_at": auth.expires_at.isoformat(),
    }


@router.post("/register", status_code=201)
async def register(body: RegisterRequest):
    profile = body.model_dump(exclude={"password", "visitor_id"})
    async with AsyncSessionLocal() as session:
        user = await identity.register_client(session, profile, body.password)
        if body.visitor_id:
            await affiliates.link_user(session, user.id, body.visitor_id)
        await session.commit()
        return {"message": "Cadastro realizado com sucesso", "user": identity.serialize_user(user)}


@router.post("/login")
async def login(body: LoginRequest):
    async with AsyncSessionLocal() as session:
        user = await identity.authenticate(session, body.national_id, body.password)
        return {
            "user": {
                "id": user.id,
                "name": user.name,
                "national_id": user.national_id,
                "roles": list(user.roles),
            },
            "login_ticket": create_login_ticket(user.id),
            "needs_role_selection": len(user.roles) > 1,
        }


@router.post("/select-role")
async def select_role(body: SelectRoleRequest, response: Response):
    user_id = verify_login_ticket(body.login_ticket)
    async with AsyncSessionLocal() as session:
        user = await identity.get_user(session, user_id)
    auth = start_session(user, body.role)
    token = create_access_token(auth)
    _set_session_cookie(response, token)
    return _session_body(user, auth, token)


@router.post("/switch-role")
async def switch_role(body: SwitchRoleRequest, request: Request, response: Response):
    token = _token_from_request(request)
    if not token:
        raise Unauthenticated()
    auth = decode_access_token(token)
    async with AsyncSessionLocal() as session:
        user = await identity.get_user(session, auth.user_id)
    # Roles are re-read: they may have changed since the token was signed
    auth = start_session(user, body.role)
    new_token = create_access_token(auth)
    _set_session_cookie(response, new_token)
    return _session_body(user, auth, new_token)


@router.get("/me")
async def me(user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        record = await identity.get_user(session, user.id)
        data = identity.serialize_user(record)
    data["current_role"] = user.current_role
    return data


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(COOKIE_NAME)
    return {"message": "Logout realizado com sucesso"}
