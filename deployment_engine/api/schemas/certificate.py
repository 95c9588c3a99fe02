from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class CertificateResponse(BaseModel):
    domain: str
    expires_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None


class CertificatePassResponse(BaseModel):
    issued: List[str]
    renewed: List[str]
    failed: Dict[str, str]
    skipped: List[str]
    reloaded: bool
