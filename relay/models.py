from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
    account: Optional[str] = None
    details: Optional[str] = None
    timestamp: Optional[str] = None


class AccountsResponse(BaseModel):
    accounts: List[str]


class AccountStatus(BaseModel):
    configured: bool


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str = Field(default_factory=utc_timestamp)
    accounts: Dict[str, AccountStatus]


class ConnectivityResult(BaseModel):
    success: bool
    message: str
    location: Optional[str] = None


class DebugDump(BaseModel):
    account: str
    url: str
    status: Optional[int] = None
    headers: Dict[str, str] = {}
    body: str = ""
    challenge: bool = False
    error: Optional[str] = None
