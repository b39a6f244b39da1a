from typing import Union

from fastapi.responses import JSONResponse
from pydantic import BaseModel

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, PATCH, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, x-account-id",
}


def json_response(content: Union[BaseModel, dict], status_code: int = 200) -> JSONResponse:
    """JSON body with the CORS header set every API response carries."""
    if isinstance(content, BaseModel):
        content = content.model_dump(exclude_none=True)
    return JSONResponse(content=content, status_code=status_code, headers=dict(CORS_HEADERS))
