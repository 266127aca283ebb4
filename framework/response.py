from typing import Any, Optional
from pydantic import BaseModel

class ResponseModel(BaseModel):
    """Envelope for every API response: business code, message and payload."""
    code: int = 200
    message: str = "success"
    data: Optional[Any] = None
    trace_id: Optional[str] = None

    @staticmethod
    def success(data: Any = None, message: str = "success"):
        return {"code": 200, "message": message, "data": data}

    @staticmethod
    def fail(code: int = 400, message: str = "error", data: Any = None, trace_id: Optional[str] = None):
        body = {"code": code, "message": message, "data": data}
        if trace_id is not None:
            body["trace_id"] = trace_id
        return body
