# collectsync/http_problem_handlers.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from collectsync.api.problem import make_problem, problem_from_allocation_error
from collectsync.services.errors import AllocationError

logger = logging.getLogger("collectsync")


def _new_trace_id() -> str:
    return f"t_{uuid.uuid4().hex[:12]}"


def _ctx(req: Request) -> Dict[str, Any]:
    return {"path": getattr(req.url, "path", ""), "method": req.method}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AllocationError)
    async def _allocation_exc(req: Request, exc: AllocationError):
        content = problem_from_allocation_error(exc, context=_ctx(req), trace_id=_new_trace_id())
        return JSONResponse(status_code=exc.status, content=content)

    @app.exception_handler(httpx.HTTPError)
    async def _upstream_exc(req: Request, exc: httpx.HTTPError):
        trace_id = _new_trace_id()
        logger.warning("UPSTREAM_ERROR[%s]: %s", trace_id, exc)
        content = make_problem(
            status_code=502,
            error_code="UPSTREAM_ERROR",
            message=f"上游 WMS 请求失败：{exc}",
            context=_ctx(req),
            trace_id=trace_id,
        )
        return JSONResponse(status_code=502, content=content)

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(req: Request, exc: RequestValidationError):
        details: List[Dict[str, Any]] = []
        for i, e in enumerate(exc.errors()):
            if not isinstance(e, dict):
                continue
            details.append(
                {
                    "type": "validation",
                    "path": f"validation[{i}]",
                    "reason": str(e.get("msg") or e.get("type") or "invalid"),
                }
            )
        content = make_problem(
            status_code=422,
            error_code="request_validation_error",
            message="请求参数不合法",
            context=_ctx(req),
            details=details,
            trace_id=_new_trace_id(),
        )
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(HTTPException)
    async def _http_exc(req: Request, exc: HTTPException):
        d = exc.detail
        if isinstance(d, dict) and "error_code" in d and "message" in d:
            content = dict(d)
            content.setdefault("http_status", int(exc.status_code))
            content.setdefault("trace_id", _new_trace_id())
        else:
            content = make_problem(
                status_code=int(exc.status_code),
                error_code="http_error",
                message=str(d) if d is not None else "请求被拒绝",
                context=_ctx(req),
                trace_id=_new_trace_id(),
            )
        return JSONResponse(status_code=int(exc.status_code), content=content)

    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        trace_id = _new_trace_id()
        logger.exception("UNHANDLED_EXC[%s]: %s", trace_id, exc)
        content = make_problem(
            status_code=500,
            error_code="internal_error",
            message="系统异常，请稍后重试",
            context=_ctx(req),
            trace_id=trace_id,
        )
        return JSONResponse(status_code=500, content=content)
