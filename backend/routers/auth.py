# routers/auth.py — Signup, login and current-user endpoints
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, get_current_user, CurrentUser
from board_service import user_out
from database import get_db_session
from errors import NotFoundError
from models import User
from schemas import AuthResponse, LoginRequest, SignupRequest, UserPublic

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


def _build_auth_response(user: User) -> AuthResponse:
    return AuthResponse(
        user=user_out(user),
        token=AuthService.create_access_token(user.id),
    )


@router.post("/signup", response_model=AuthResponse, status_code=201)
async def signup(
    data: SignupRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new account and return a session token"""
    user = await AuthService.register_user(data, db)
    return _build_auth_response(user)


@router.post("/login", response_model=AuthResponse)
async def login(
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db_session),
):
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    return _build_auth_response(user)


@router.get("/me", response_model=UserPublic)
async def me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get current authenticated user information"""
    result = await db.execute(select(User).where(User.id == user.id))
    user_obj = result.scalar_one_or_none()
    if not user_obj:
        raise NotFoundError("User not found")
    return user_out(user_obj)
