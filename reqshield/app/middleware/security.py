"""Security pipeline middleware.

Adapts each Starlette request into an InboundRequest, runs the security
pipeline on it, and either answers with the pipeline's terminal response
or forwards the request to the application.
"""

import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from reqshield.app.core.logging import get_logger
from reqshield.app.core.security import strip_server_headers
from reqshield.app.services.pipeline import InboundRequest, SecurityPipeline, TerminalResponse

logger = get_logger(__name__)

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def collect_fields(items: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    """Group (key, value) pairs, keeping every value of a repeated key.

    A key seen once maps to its value; a repeated key maps to the list of
    its values in request order.
    """
    grouped: Dict[str, List[Any]] = {}
    for key, value in items:
        grouped.setdefault(key, []).append(value)
    return {k: vals if len(vals) > 1 else vals[0] for k, vals in grouped.items()}


class SecurityPipelineMiddleware(BaseHTTPMiddleware):
    """Middleware to run every request through the security pipeline.

    On success the following are available to endpoints:
    - request.state.client_identity
    - request.state.sanitized_query / sanitized_form / sanitized_body
    - request.state.threat_findings
    - request.state.csrf (CsrfValidation, or None for skipped checks)
    """

    def __init__(
        self,
        app,
        pipeline: SecurityPipeline,
        session_cookie_name: str = "session_id",
    ):
        super().__init__(app)
        self.pipeline = pipeline
        self.session_cookie_name = session_cookie_name

    async def _read_inputs(self, request: Request) -> tuple[Optional[Dict[str, Any]], Any]:
        """Parse the request body as a form or JSON document.

        Returns:
            (form fields or None, JSON body or None)
        """
        if request.method in ("GET", "HEAD", "OPTIONS", "TRACE"):
            return None, None

        # Read the body first so it is cached and replayed to the endpoint
        raw = await request.body()
        if not raw:
            return None, None

        content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type in FORM_CONTENT_TYPES:
            form = await request.form()
            # Uploaded files are not scanned, only text fields
            return collect_fields((k, v) for k, v in form.multi_items() if isinstance(v, str)), None

        if content_type == "application/json" or content_type.endswith("+json"):
            try:
                return None, json.loads(raw)
            except (ValueError, UnicodeDecodeError, RecursionError):
                logger.debug("Request body is not valid JSON, skipping input inspection")
                return None, None
        return None, None

    async def build_inbound(self, request: Request) -> InboundRequest:
        form, body = await self._read_inputs(request)
        return InboundRequest(
            method=request.method,
            path=request.url.path,
            headers={k.lower(): v for k, v in request.headers.items()},
            query=collect_fields(request.query_params.multi_items()),
            form=form,
            body=body,
            session_id=request.cookies.get(self.session_cookie_name),
            client_host=request.client.host if request.client else None,
            scheme=request.url.scheme,
            query_string=request.url.query,
        )

    @staticmethod
    def render(terminal: TerminalResponse) -> Response:
        if terminal.status_code in (301, 302, 307, 308):
            headers = dict(terminal.headers)
            location = headers.pop("Location")
            return RedirectResponse(location, status_code=terminal.status_code, headers=headers)
        return JSONResponse(
            status_code=terminal.status_code,
            content=terminal.body,
            headers=terminal.headers,
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request through the security pipeline."""
        inbound = await self.build_inbound(request)
        result = await self.pipeline.run(inbound)
        ctx = result.context

        request.state.client_identity = ctx.client_identity

        if not result.proceed:
            response = self.render(result.response)
            strip_server_headers(response.headers)
            return response

        request.state.sanitized_query = ctx.sanitized_query
        request.state.sanitized_form = ctx.sanitized_form
        request.state.sanitized_body = ctx.sanitized_body
        request.state.threat_findings = ctx.findings
        request.state.csrf = ctx.csrf

        response = await call_next(request)

        for name, value in ctx.response_headers.items():
            response.headers[name] = value
        strip_server_headers(response.headers)
        return response
