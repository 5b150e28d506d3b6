"""
Procedure-style RPC surface.

Procedures are plain callables `handler(ctx, input)` registered on an
RpcRouter and served as `POST /rpc/{name}`. Middlewares wrap a procedure as
`middleware(ctx, call_next)` and may raise RpcError to short-circuit or run
code after `call_next()` returns.

Wire format:
    success: {"result": {"data": ...}}
    failure: {"error": {"code", "message", "cause", "request_id"}}
with the HTTP status taken from RPC_HTTP_STATUS.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Type

from fastapi import APIRouter, Body, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tightship.core.auth import get_optional_user_id
from tightship.core.errors import AppError
from tightship.core.logging import get_request_id

logger = logging.getLogger("tightship.rpc")

RPC_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "UNAUTHORIZED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "TOO_MANY_REQUESTS": 429,
    "INTERNAL_SERVER_ERROR": 500,
}

_CODE_FOR_STATUS = {status: code for code, status in RPC_HTTP_STATUS.items()}


class RpcError(Exception):
    def __init__(self, code: str, message: Optional[str] = None, cause: Optional[Dict[str, Any]] = None):
        if code not in RPC_HTTP_STATUS:
            raise ValueError(f"Unknown RPC error code: {code}")
        super().__init__(message or code)
        self.code = code
        self.message = message or code
        self.cause = cause

    @property
    def http_status(self) -> int:
        return RPC_HTTP_STATUS[self.code]

    @classmethod
    def from_app_error(cls, exc: AppError) -> "RpcError":
        code = _CODE_FOR_STATUS.get(exc.status_code, "INTERNAL_SERVER_ERROR")
        message = exc.message if exc.status_code < 500 else "Internal error"
        return cls(code, message, cause={"error_code": exc.code})


@dataclass
class RpcContext:
    user_id: Optional[str]
    request_id: Optional[str] = None
    values: Dict[str, Any] = field(default_factory=dict)


Middleware = Callable[[RpcContext, Callable[[], Any]], Any]


@dataclass
class Procedure:
    name: str
    handler: Callable[[RpcContext, Any], Any]
    input_model: Optional[Type[BaseModel]] = None
    middlewares: List[Middleware] = field(default_factory=list)

    def use(self, middleware: Middleware) -> "Procedure":
        return Procedure(self.name, self.handler, self.input_model, [*self.middlewares, middleware])

    def call(self, ctx: RpcContext, payload: Any = None) -> Any:
        if self.input_model is not None:
            try:
                data = self.input_model.model_validate(payload or {})
            except PydanticValidationError as exc:
                raise RpcError("BAD_REQUEST", "Invalid input", cause={"errors": jsonable_encoder(exc.errors())})
        else:
            data = payload

        def invoke(index: int) -> Any:
            if index == len(self.middlewares):
                return self.handler(ctx, data)
            return self.middlewares[index](ctx, lambda: invoke(index + 1))

        return invoke(0)


def _no_context_values() -> Dict[str, Any]:
    return {}


class RpcRouter:
    def __init__(self):
        self.procedures: Dict[str, Procedure] = {}

    def procedure(
        self,
        name: str,
        *,
        input_model: Optional[Type[BaseModel]] = None,
        middlewares: Sequence[Middleware] = (),
    ):
        def decorator(handler):
            self.procedures[name] = Procedure(name, handler, input_model, list(middlewares))
            return handler

        return decorator

    def call(self, name: str, ctx: RpcContext, payload: Any = None) -> Any:
        procedure = self.procedures.get(name)
        if procedure is None:
            raise RpcError("NOT_FOUND", f"No procedure named '{name}'")
        try:
            return procedure.call(ctx, payload)
        except AppError as exc:
            raise RpcError.from_app_error(exc) from exc

    def as_api_router(
        self,
        prefix: str = "/rpc",
        context_values: Optional[Callable[..., Dict[str, Any]]] = None,
    ) -> APIRouter:
        """
        Serve every procedure as POST {prefix}/{name}.

        `context_values` is a FastAPI dependency whose result seeds
        RpcContext.values, so middlewares get services through the same
        overridable providers as HTTP routes.
        """
        api = APIRouter(prefix=prefix, tags=["rpc"])
        provide_values = context_values or _no_context_values

        @api.post("/{name}")
        def call_procedure(
            name: str,
            request: Request,
            payload: Optional[Dict[str, Any]] = Body(default=None),
            user_id: Optional[str] = Depends(get_optional_user_id),
            values: Dict[str, Any] = Depends(provide_values),
        ):
            rid = getattr(request.state, "request_id", None) or get_request_id()
            ctx = RpcContext(user_id=user_id, request_id=rid, values=dict(values))
            result = self.call(name, ctx, payload)
            return {"result": {"data": jsonable_encoder(result)}}

        return api


async def rpc_error_handler(request: Request, exc: RpcError):
    rid = getattr(request.state, "request_id", None) or get_request_id()
    log_level = logging.ERROR if exc.http_status >= 500 else logging.WARNING
    logger.log(log_level, "rpc.error", extra={"request_id": rid, "error_code": exc.code, "status": exc.http_status})
    payload = {
        "error": {
            "code": exc.code,
            "message": exc.message,
            "cause": jsonable_encoder(exc.cause),
            "request_id": rid,
        }
    }
    response = JSONResponse(status_code=exc.http_status, content=payload)
    if rid:
        response.headers["x-request-id"] = rid
    return response
