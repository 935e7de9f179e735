# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/scope.py
"""
Server-side scope resolution.

A route maps to a (scope, plan) pair through a static table. The caller's
authentication state decides which plan actually applies and whether the
scope is reachable at all. Scope or plan values sent by the client
(query params, headers) are never used: they are logged and dropped.
"""
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from pixgate.infra.errors import AuthorizationDenied

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteScope:
    scope: str
    plan_id: str


_CONTENT_PAGES = (
    "/about", "/contact", "/support", "/features", "/blog",
    "/terms-of-service", "/privacy-policy", "/cookie-policy",
    "/cancellation-policy", "/payment-protection",
)


def _routes(scope: str, plan_id: str, paths: Iterable[str]) -> Dict[str, RouteScope]:
    return {p: RouteScope(scope, plan_id) for p in paths}


ROUTE_SCOPES: Dict[str, RouteScope] = {
    **_routes("main", "anonymous", ("/", "/landing", "/landing-new", "/landing-simple", "/micro-jpeg-landing")),
    **_routes("free", "free", ("/compress-free", "/free-signed-compress")),
    **_routes("test_premium", "test_premium", ("/test-premium", "/test-premium-compress")),
    **_routes("pro", "pro", ("/compress-premium", "/premium-compress")),
    **_routes("enterprise", "enterprise", ("/compress-enterprise", "/enterprise-compress")),
    **_routes("cr2-free", "cr2-free", ("/convert/cr2-to-jpg", "/convert/cr2-to-png", "/cr2-converter", "/convert-cr2-to-jpg")),
    **_routes("raw_converter", "cr2-free", ("/compress-raw-files",)),
    **_routes("web_tools", "anonymous", ("/web-compress", "/web/compress", "/web-convert", "/web/convert", "/web-overview", "/web/overview")),
    **_routes("bulk", "pro", ("/bulk-image-compression",)),
    **_routes("api", "anonymous", ("/api-docs", "/api-demo", "/api-dashboard", "/image-api-developers")),
    **_routes("user_account", "free", ("/dashboard", "/profile")),
    **_routes("payment", "anonymous", ("/subscribe", "/simple-pricing", "/subscription-success", "/razorpay-checkout", "/purchase-flow")),
    **_routes("auth", "anonymous", ("/login", "/signup", "/email-verification")),
    **_routes("wordpress", "anonymous", ("/wordpress-details", "/wordpress-image-plugin", "/wordpress-installation", "/wordpress-development")),
    **_routes("content", "anonymous", _CONTENT_PAGES),
}

PREFIX_SCOPES: Tuple[Tuple[str, RouteScope], ...] = (
    ("/blog/", RouteScope("content", "anonymous")),
    ("/api/", RouteScope("api", "anonymous")),
)

DEFAULT_ROUTE_SCOPE = RouteScope("main", "anonymous")

# reachable without authentication
PUBLIC_SCOPES: FrozenSet[str] = frozenset({
    "main", "free", "cr2-free", "raw_converter", "web_tools",
    "api", "content", "payment", "auth", "wordpress",
})

# scopes that need a matching active subscription
SCOPE_REQUIRED_PLANS: Dict[str, FrozenSet[str]] = {
    "pro": frozenset({"pro"}),
    "enterprise": frozenset({"enterprise"}),
    "test_premium": frozenset({"test_premium"}),
    "bulk": frozenset({"pro", "enterprise"}),
}

# scopes counted against their own plan whatever the caller's subscription
ISOLATED_SCOPE_PLANS: Dict[str, str] = {
    "cr2-free": "cr2-free",
    "raw_converter": "cr2-free",
}

CLIENT_OVERRIDE_FIELDS: Tuple[str, ...] = (
    "scope", "planid", "plan_id", "pagesource", "x-usage-scope", "x-plan-id", "x-page-source",
)


@dataclass(frozen=True)
class AuthState:
    """What the auth collaborator established about the caller."""
    user_id: Optional[str] = None
    subscription_plan: Optional[str] = None
    subscription_active: bool = False
    api_key_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id or self.api_key_id)

    def effective_plan(self) -> str:
        if self.subscription_active and self.subscription_plan:
            return self.subscription_plan
        return "free"


ANONYMOUS = AuthState()


@dataclass(frozen=True)
class ResolvedScope:
    scope: str
    plan_id: str
    route_path: Optional[str] = None


def _normalize_path(route_path: str) -> str:
    path = (route_path or "/").split("?", 1)[0].split("#", 1)[0].strip() or "/"
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path.lower()


class ScopeResolver:
    def __init__(
        self,
        *,
        routes: Optional[Mapping[str, RouteScope]] = None,
        public_scopes: Optional[Iterable[str]] = None,
        required_plans: Optional[Mapping[str, Iterable[str]]] = None,
    ):
        self.routes: Dict[str, RouteScope] = dict(routes if routes is not None else ROUTE_SCOPES)
        self.public_scopes = frozenset(public_scopes if public_scopes is not None else PUBLIC_SCOPES)
        src = required_plans if required_plans is not None else SCOPE_REQUIRED_PLANS
        self.required_plans: Dict[str, FrozenSet[str]] = {k: frozenset(v) for k, v in src.items()}
        self.known_scopes = frozenset(
            {rs.scope for rs in self.routes.values()}
            | {DEFAULT_ROUTE_SCOPE.scope}
            | set(self.public_scopes)
            | set(self.required_plans)
        )

    def route_scope(self, route_path: str) -> RouteScope:
        path = _normalize_path(route_path)
        hit = self.routes.get(path)
        if hit:
            return hit
        for prefix, rs in PREFIX_SCOPES:
            if path.startswith(prefix):
                return rs
        return DEFAULT_ROUTE_SCOPE

    def resolve(
        self,
        route_path: str,
        auth: AuthState = ANONYMOUS,
        client_claims: Optional[Mapping[str, str]] = None,
    ) -> ResolvedScope:
        rs = self.route_scope(route_path)
        resolved = self.authorize(rs.scope, auth, client_claims)
        return ResolvedScope(scope=resolved.scope, plan_id=resolved.plan_id, route_path=_normalize_path(route_path))

    def authorize(
        self,
        scope: str,
        auth: AuthState = ANONYMOUS,
        client_claims: Optional[Mapping[str, str]] = None,
    ) -> ResolvedScope:
        """
        Decide the plan for `scope` given the caller, or raise AuthorizationDenied.

        Never downgrades: a caller who cannot use `scope` is refused rather
        than moved to a cheaper scope.
        """
        self._discard_client_claims(scope, client_claims)

        if scope not in self.known_scopes:
            logger.warning("Denied unknown usage scope %r", scope)
            raise AuthorizationDenied(f"Unknown usage scope: {scope}", scope=scope)

        if not auth.is_authenticated:
            if scope not in self.public_scopes:
                logger.info("Denied anonymous access to protected scope %s", scope)
                raise AuthorizationDenied("Authentication required", scope=scope)
            return ResolvedScope(scope=scope, plan_id=ISOLATED_SCOPE_PLANS.get(scope, "anonymous"))

        plan_id = auth.effective_plan()
        required = self.required_plans.get(scope)
        if required is not None and plan_id not in required:
            logger.info("Denied scope %s for user %s on plan %s", scope, auth.user_id or auth.api_key_id, plan_id)
            raise AuthorizationDenied(
                f"Scope '{scope}' requires an active {' or '.join(sorted(required))} subscription",
                scope=scope,
            )
        return ResolvedScope(scope=scope, plan_id=ISOLATED_SCOPE_PLANS.get(scope, plan_id))

    @staticmethod
    def _discard_client_claims(scope: str, client_claims: Optional[Mapping[str, str]]) -> None:
        if not client_claims:
            return
        ignored = {
            k: v for k, v in client_claims.items()
            if k.lower() in CLIENT_OVERRIDE_FIELDS and v not in (None, "")
        }
        if ignored:
            logger.warning("Ignoring client-supplied scope/plan values %s (server scope: %s)", ignored, scope)
