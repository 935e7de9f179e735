# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/identity.py
import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

CLIENT_SESSION_PREFIX = "mj_client_"
ANONYMOUS_SESSION_PREFIX = "anon_"
MAX_ISOLATION_LENGTH = 256


class IdentityKind(str, Enum):
    USER = "user"
    ANONYMOUS = "anon"
    API_KEY = "apikey"


class IsolationAxis(str, Enum):
    GLOBAL = "all"
    SCOPE = "scope"
    PAGE = "page"


@dataclass
class RequestContext:
    """Framework-agnostic request context"""
    client_ip: str
    user_agent: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)

    def get_fingerprint(self) -> str:
        """Generate client fingerprint"""
        fingerprint_data = f"{self.client_ip}:{self.user_agent}"
        return hashlib.sha256(fingerprint_data.encode()).hexdigest()[:16]

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for k, v in self.headers.items():
            if k.lower() == name:
                return v
        return None


def ip_hash(ip: str) -> str:
    return hashlib.sha256((ip or "").encode()).hexdigest()[:16]


def anonymous_session_id(ctx: RequestContext) -> str:
    """
    Stable id for an anonymous visitor.

    A client-generated id (x-session-id: mj_client_*) is kept as-is so the
    browser keeps its counters across IP changes; otherwise the id is derived
    from the ip/user-agent fingerprint.
    """
    client_session = (ctx.header("x-session-id") or "").strip()
    if client_session.startswith(CLIENT_SESSION_PREFIX) and len(client_session) <= 128:
        return client_session
    return f"{ANONYMOUS_SESSION_PREFIX}{ctx.get_fingerprint()}"


@dataclass(frozen=True)
class Identity:
    kind: IdentityKind
    id: str
    ip_hash: Optional[str] = None

    @classmethod
    def user(cls, user_id: str) -> "Identity":
        return cls(IdentityKind.USER, str(user_id))

    @classmethod
    def anonymous(cls, session_id: str, ip_hash: Optional[str] = None) -> "Identity":
        return cls(IdentityKind.ANONYMOUS, session_id, ip_hash)

    @classmethod
    def from_request(cls, ctx: RequestContext) -> "Identity":
        return cls.anonymous(anonymous_session_id(ctx), ip_hash(ctx.client_ip))

    @classmethod
    def api_key(cls, key_id: str) -> "Identity":
        return cls(IdentityKind.API_KEY, str(key_id))

    @property
    def is_anonymous(self) -> bool:
        return self.kind is IdentityKind.ANONYMOUS

    def prefix(self) -> str:
        return f"{self.kind.value}:{_part(self.id)}:"


def _part(value: str) -> str:
    return str(value).replace(":", "_")


def normalize_page_identifier(value: str) -> str:
    """`/Compress-Free/?a=1#x` -> `/compress-free`"""
    page = (value or "").strip().split("?", 1)[0].split("#", 1)[0].lower()
    if not page.startswith("/"):
        page = "/" + page
    if len(page) > 1:
        page = page.rstrip("/") or "/"
    return page[:MAX_ISOLATION_LENGTH]


@dataclass(frozen=True)
class CounterKey:
    """
    One usage counter: an identity isolated along one axis.

    The same user on two product pages (PAGE axis) or two scopes (SCOPE axis)
    accrues independent counters; GLOBAL is the identity-wide counter.
    """
    identity_kind: IdentityKind
    identity_id: str
    axis: IsolationAxis = IsolationAxis.GLOBAL
    isolation: str = "*"

    @classmethod
    def for_scope(cls, identity: Identity, scope: str) -> "CounterKey":
        return cls(identity.kind, identity.id, IsolationAxis.SCOPE, scope)

    @classmethod
    def for_page(cls, identity: Identity, page_identifier: str) -> "CounterKey":
        return cls(identity.kind, identity.id, IsolationAxis.PAGE, normalize_page_identifier(page_identifier))

    @classmethod
    def global_for(cls, identity: Identity) -> "CounterKey":
        return cls(identity.kind, identity.id)

    def render(self) -> str:
        return f"{self.identity_kind.value}:{_part(self.identity_id)}:{self.axis.value}:{_part(self.isolation)}"

    def __str__(self) -> str:
        return self.render()
