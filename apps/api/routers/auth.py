"""
Authentication API endpoints.

Provides:
- Athlete registration
- Login (JWT token generation)
- Current athlete profile
"""
from datetime import date
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.database import get_db
from core.security import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    create_access_token,
    get_password_hash,
    verify_password,
)
from models import Athlete

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 8
# bcrypt only accepts up to 72 bytes of input
MAX_PASSWORD_BYTES = 72


class UserRegister(BaseModel):
    """Schema for athlete registration."""
    email: EmailStr
    password: str
    display_name: Optional[str] = None
    birthdate: Optional[date] = None
    sex: Optional[str] = Field(None, pattern="^[MF]$")
    max_hr: Optional[int] = Field(None, ge=120, le=230)
    resting_hr: Optional[int] = Field(None, ge=25, le=120)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


def _athlete_payload(athlete: Athlete) -> dict:
    return {
        "id": str(athlete.id),
        "email": athlete.email,
        "display_name": athlete.display_name,
        "max_hr": athlete.max_hr,
        "resting_hr": athlete.resting_hr,
        "vdot": athlete.vdot,
        "threshold_pace_per_mile": athlete.threshold_pace_per_mile,
        "strava_connected": athlete.has_strava_connection,
    }


def _token_response(athlete: Athlete) -> dict:
    return {
        "access_token": create_access_token(data={"sub": str(athlete.id)}),
        "token_type": "bearer",
        "expires_in": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        "athlete": _athlete_payload(athlete),
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    user_data: UserRegister,
    db: Session = Depends(get_db)
):
    """
    Register a new athlete with email/password authentication.

    A token is issued immediately so the web app can go straight to
    connecting Strava.
    """
    email = user_data.email.strip().lower()

    existing = db.query(Athlete).filter(Athlete.email == email).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    if len(user_data.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )

    if len(user_data.password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
        )

    athlete = Athlete(
        email=email,
        password_hash=get_password_hash(user_data.password),
        display_name=user_data.display_name or email.split("@")[0],
        birthdate=user_data.birthdate,
        sex=user_data.sex,
        max_hr=user_data.max_hr,
        resting_hr=user_data.resting_hr,
    )
    db.add(athlete)
    db.flush()
    logger.info(f"Athlete registered: {athlete.id}")

    return _token_response(athlete)


@router.post("/login")
def login(
    credentials: UserLogin,
    db: Session = Depends(get_db)
):
    """Authenticate and return a JWT valid for ACCESS_TOKEN_EXPIRE_MINUTES."""
    email = credentials.email.strip().lower()
    user = db.query(Athlete).filter(Athlete.email == email).first()

    # Same message for unknown email and wrong password
    too_long = len(credentials.password.encode("utf-8")) > MAX_PASSWORD_BYTES
    if not user or not user.password_hash or too_long or not verify_password(credentials.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _token_response(user)


@router.get("/me")
def me(current_user: Athlete = Depends(get_current_user)):
    return _athlete_payload(current_user)
