# clinicbook/security.py
"""Caller identity. Tokens are issued by the external auth layer; here we only decode them."""
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from .config import get_settings
from .errors import ScopeError

security_logger = logging.getLogger("clinicbook.security")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token", auto_error=False)

ROLES = ("patient", "staff", "admin")


@dataclass(frozen=True)
class CallerScope:
    role: str
    patient_id: Optional[int] = None
    clinic_id: Optional[int] = None
    staff_id: Optional[int] = None

    @classmethod
    def system(cls) -> "CallerScope":
        return cls(role="admin")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_staff(self) -> bool:
        return self.role in ("staff", "admin")

    def ensure_clinic(self, clinic_id: int) -> None:
        if self.is_admin:
            return
        if self.role == "staff" and self.clinic_id == clinic_id:
            return
        raise ScopeError(details={"clinic_id": clinic_id})

    def ensure_staff(self) -> None:
        if not self.is_staff:
            raise ScopeError("Staff access required")

    def clinic_filter(self) -> Optional[int]:
        """Clinic id every staff query is pinned to; None for admins."""
        if self.is_admin:
            return None
        if self.role == "staff":
            return self.clinic_id
        raise ScopeError("Staff access required")


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_caller(token: str) -> CallerScope:
    settings = get_settings()
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    role = payload.get("role")
    if role not in ROLES:
        raise JWTError("unknown role")
    return CallerScope(
        role=role,
        patient_id=payload.get("patient_id"),
        clinic_id=payload.get("clinic_id"),
        staff_id=payload.get("staff_id"),
    )


async def get_caller(token: Optional[str] = Depends(oauth2_scheme)) -> CallerScope:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception
    try:
        return decode_caller(token)
    except JWTError:
        security_logger.warning("Rejected bearer token")
        raise credentials_exception


async def require_staff(caller: CallerScope = Depends(get_caller)) -> CallerScope:
    if not caller.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff access required")
    return caller


async def require_patient(caller: CallerScope = Depends(get_caller)) -> CallerScope:
    if caller.role != "patient" or caller.patient_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Patient access required")
    return caller


async def verify_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = get_settings().cron_secret
    if not secret:
        security_logger.error("CRON_SECRET is not configured; refusing scheduled trigger")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron trigger not configured")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        security_logger.warning("Unauthorized cron trigger attempt")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
