from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field


# =========================
# SQL AGENT
# =========================
class SqlAgentRequest(BaseModel):
    sql: str = Field(min_length=1, max_length=5000)


class SqlAgentResponse(BaseModel):
    sql: str
    rows: List[Dict[str, Any]] = []


class SqlGateErrorDetail(BaseModel):
    """
    Shape of `detail` on every rejected or failed SQL agent call.
    """
    code: str
    message: str
    subreason: Optional[str] = None
