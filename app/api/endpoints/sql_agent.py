import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncEngine

from app.ai_feature import service
from app.core import models, schemas
from app.core.database import get_engine
from app.core.security import get_current_user
from app.core.sql_gate.errors import (
    ConnectionAcquisitionFailed,
    ExecutionFailed,
    QueryRejected,
    StatementTimeoutExceeded,
)

router = APIRouter(prefix="/ai", tags=["SQL Agent"])

engine_dep = Annotated[AsyncEngine, Depends(get_engine)]
user_dep = Annotated[models.User, Depends(get_current_user)]

error_responses = {
    status.HTTP_400_BAD_REQUEST: {"model": schemas.SqlGateErrorDetail},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": schemas.SqlGateErrorDetail},
    status.HTTP_504_GATEWAY_TIMEOUT: {"model": schemas.SqlGateErrorDetail},
}


@router.post("/sql", response_model=schemas.SqlAgentResponse, responses=error_responses)
async def ask_sql(
    body: schemas.SqlAgentRequest, current_user: user_dep, engine: engine_dep
):
    """
    Run an analytical SELECT scoped to the current user.
    The statement is rewritten (tenant filter, LIMIT) before execution.
    """
    try:
        answer = await service.answer_query(body.sql, current_user.id, engine)
    except QueryRejected as error:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, error.to_dict())
    except StatementTimeoutExceeded as error:
        raise HTTPException(status.HTTP_504_GATEWAY_TIMEOUT, error.to_dict())
    except ConnectionAcquisitionFailed as error:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, error.to_dict())
    except ExecutionFailed as error:
        logging.error(f"SQL agent query failed: {error.underlying}")
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, error.to_dict())

    return {"sql": answer.query.sql, "rows": answer.rows}
