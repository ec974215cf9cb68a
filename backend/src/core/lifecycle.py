"""
Request lifecycle for API routes: rate limiting, response caching, headers.

Every request under the API prefix moves through these stages:

    START -> RATE_CHECKED -> CACHE_CHECKED -> HANDLER_RUN -> CACHE_WRITE
          -> HEADERS_ATTACHED -> END

A rate limit denial jumps straight to HEADERS_ATTACHED with a 429; a cache
hit jumps there with the cached 200 body. Requests outside the prefix pass
through untouched.
"""
import json
import logging
from collections.abc import Iterable
from enum import StrEnum

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.routing import Match

from core.auth import resolve_requester
from core.cache_config import DeleteRule, RetrievalRule, UpdateRule
from core.rate_limit_config import RateLimitDecision
from core.rate_limiter import (
    RateLimiter,
    decision_headers,
    rate_limit_exceeded_body,
    rejection_headers,
    resolve_client_identity,
)
from core.response_cache import (
    CACHE_HIT,
    CACHE_MISS,
    CACHE_STATUS_HEADER,
    CachePolicyEngine,
    Params,
    UserIdLookup,
    apply_placeholders,
    build_key,
)
from services.storage import Storage
from services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

UPDATE_METHODS = frozenset({"POST", "PATCH", "PUT"})
UPDATE_STATUSES = frozenset({200, 201})
DELETE_STATUSES = frozenset({200, 204})


class LifecycleStage(StrEnum):
    """Where a request is in the lifecycle; kept on request.state.lifecycle_stage."""

    START = "start"
    RATE_CHECKED = "rate_checked"
    CACHE_CHECKED = "cache_checked"
    HANDLER_RUN = "handler_run"
    CACHE_WRITE = "cache_write"
    HEADERS_ATTACHED = "headers_attached"
    END = "end"


def named_api_routes(routers: Iterable[APIRouter]) -> tuple[APIRoute, ...]:
    """
    Named API routes in dispatch order, taken from the routers the app includes.

    The app's own router may wrap included routers in objects that carry no
    route name, so matching runs against each router's APIRoute objects.
    """
    return tuple(
        route
        for router in routers
        for route in router.routes
        if isinstance(route, APIRoute) and route.name
    )


def resolve_route_name(request: Request) -> str | None:
    """
    Name of the route that will handle the request.

    Runs before routing, so it repeats the router's own matching: the first
    route that fully matches path and method wins.
    """
    routes: tuple[APIRoute, ...] = getattr(request.app.state, "api_routes", ())
    for route in routes:
        match, _ = route.matches(request.scope)
        if match is Match.FULL:
            return route.name
    return None


async def _read_body(response: Response) -> tuple[bytes, Response]:
    """Drain a streaming response and rebuild it so it can still be sent."""
    body = b"".join([chunk async for chunk in response.body_iterator])
    rebuilt = Response(content=body, status_code=response.status_code)
    # raw_headers keeps repeated headers such as Set-Cookie
    rebuilt.raw_headers = [
        (name, value) for name, value in response.raw_headers if name != b"content-length"
    ] + rebuilt.raw_headers
    return body, rebuilt


def _is_json(response: Response) -> bool:
    return "application/json" in response.headers.get("content-type", "")


def _friend_uid(body: bytes) -> int | None:
    """friend_id from a JSON response body, if any."""
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("friend_id"), int):
        return payload["friend_id"]
    return None


class RequestLifecycleMiddleware(BaseHTTPMiddleware):
    """
    Coordinates the rate limiter and the response cache around route handlers.

    Reads its collaborators from app.state: settings, rate_limiter,
    response_cache and session_factory.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process an API request through rate limiting, caching and headers."""
        settings = request.app.state.settings
        if not request.url.path.startswith(settings.api_prefix):
            return await call_next(request)

        self._advance(request, LifecycleStage.START)
        requester = await resolve_requester(request)
        requester_id = requester.id if requester is not None else None

        limiter: RateLimiter = request.app.state.rate_limiter
        identity = resolve_client_identity(
            request.headers, request.client.host if request.client else None,
        )
        decision = await limiter.check_request(
            identity, requester is not None, resolve_route_name(request),
        )
        request.state.rate_limit = decision
        self._advance(request, LifecycleStage.RATE_CHECKED)

        if not decision.allowed:
            now = limiter.now()
            response = JSONResponse(
                status_code=429,
                content=rate_limit_exceeded_body(decision, now),
                headers=rejection_headers(decision, now),
            )
            self._advance(request, LifecycleStage.HEADERS_ATTACHED)
            return self._end(request, response)

        cache: CachePolicyEngine = request.app.state.response_cache
        method, path = request.method, request.url.path
        excluded = cache.is_excluded(path)

        retrieval: RetrievalRule | None = None
        write_rule: UpdateRule | DeleteRule | None = None
        key: str | None = None
        write_params: Params = {}
        if not excluded:
            retrieval = cache.match_retrieval(method, path)
            if method in UPDATE_METHODS:
                write_rule = cache.match_update(method, path)
            elif method == "DELETE":
                write_rule = cache.match_delete(method, path)

        if retrieval is not None:
            params = await cache.extract_path_params(
                retrieval, path, self._user_id_lookup(request),
            )
            key = build_key(
                retrieval.key_template,
                apply_placeholders(params, request.query_params, requester_id),
            )
            cached = await cache.lookup(key)
            self._advance(request, LifecycleStage.CACHE_CHECKED)
            if cached is not None:
                response = Response(
                    content=cached,
                    status_code=200,
                    media_type="application/json",
                    headers={CACHE_STATUS_HEADER: CACHE_HIT},
                )
                return self._attach_headers(request, response, decision)
        else:
            self._advance(request, LifecycleStage.CACHE_CHECKED)

        if write_rule is not None:
            # Resolved before the handler runs: a deleted user's username no
            # longer resolves afterwards
            write_params = apply_placeholders(
                await cache.extract_path_params(write_rule, path, self._user_id_lookup(request)),
                request.query_params,
                requester_id,
            )

        try:
            response = await call_next(request)
        except Exception:
            # Unhandled errors still leave with rate limit headers
            logger.exception("unhandled_exception", extra={"method": method, "path": path})
            response = JSONResponse(status_code=500, content={"detail": "Internal Server Error"})
        self._advance(request, LifecycleStage.HANDLER_RUN)

        if retrieval is not None and key is not None:
            response.headers[CACHE_STATUS_HEADER] = CACHE_MISS
            if response.status_code == 200 and _is_json(response):
                body, response = await _read_body(response)
                await cache.store(retrieval, key, body)
        elif write_rule is not None and self._write_succeeded(method, response.status_code):
            body, response = await _read_body(response)
            if isinstance(write_rule, UpdateRule):
                friend_uid = _friend_uid(body)
                if friend_uid is not None:
                    write_params["friend_uid"] = friend_uid
            await cache.invalidate(write_rule.invalidate_patterns, write_params)
        self._advance(request, LifecycleStage.CACHE_WRITE)

        return self._attach_headers(request, response, decision)

    @staticmethod
    def _write_succeeded(method: str, status_code: int) -> bool:
        if method == "DELETE":
            return status_code in DELETE_STATUSES
        return status_code in UPDATE_STATUSES

    @staticmethod
    def _user_id_lookup(request: Request) -> UserIdLookup:
        settings = request.app.state.settings
        session_factory = request.app.state.session_factory

        async def find_user_id(username: str) -> int | None:
            async with session_factory() as session:
                return await UserDirectory(Storage(session), settings).find_user_id(username)

        return find_user_id

    def _attach_headers(
        self,
        request: Request,
        response: Response,
        decision: RateLimitDecision,
    ) -> Response:
        response.headers.update(decision_headers(decision))
        self._advance(request, LifecycleStage.HEADERS_ATTACHED)
        return self._end(request, response)

    def _end(self, request: Request, response: Response) -> Response:
        self._advance(request, LifecycleStage.END)
        return response

    @staticmethod
    def _advance(request: Request, stage: LifecycleStage) -> None:
        request.state.lifecycle_stage = stage
