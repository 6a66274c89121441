from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from auction_house.models.user import UserCreate, UserLogin, Token, ProfileResponse
from auction_house.models_sqlalchemy import get_db
from auction_house.models_sqlalchemy.models import Profile
from auction_house.services.auth import (
    register_user,
    authenticate_user,
    create_access_token,
    get_current_caller,
)
from auction_house.services.policies import Caller
from auction_house.utils.logger import logger

router = APIRouter(prefix="/auth", tags=["authentication"])


def _profile_response(profile: Profile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        user_id=profile.user_id,
        email=profile.email,
        full_name=profile.full_name,
        avatar_url=profile.avatar_url,
        created_at=profile.created_at,
        updated_at=profile.updated_at,
    )


@router.post("/signup", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
async def signup(user_data: UserCreate, db: Session = Depends(get_db)):
    logger.info(f"Signup attempt for email: {user_data.email}")
    user = register_user(db, user_data)
    return _profile_response(user.profile)


@router.post("/login", response_model=Token)
async def login(user_credentials: UserLogin, request: Request, db: Session = Depends(get_db)):
    rid = getattr(request.state, "rid", "unknown")
    logger.info(f"Login attempt email={user_credentials.email} rid={rid}")

    user = authenticate_user(db, user_credentials.email, user_credentials.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = create_access_token(data={"sub": user.id})
    return Token(access_token=access_token, token_type="bearer")


@router.get("/me", response_model=ProfileResponse)
async def me(caller: Caller = Depends(get_current_caller), db: Session = Depends(get_db)):
    profile = db.query(Profile).filter(Profile.user_id == caller.user_id).first()
    if not profile:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return _profile_response(profile)
