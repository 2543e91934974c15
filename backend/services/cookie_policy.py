"""
Refresh token cookie attributes.

``resolve`` merges four layers, highest priority first:

1. explicit overrides (``COOKIE_*`` settings)
2. runtime filters: whole-policy functions, then per-field functions
3. environment defaults from ``classify_environment``
4. a hard-coded safe fallback

The merged policy is validated every time. Invalid combinations raise
``ConfigurationError``; they are never quietly downgraded.
"""

import logging
import re
import urllib.parse
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from services.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_COOKIE_NAME = "refresh_token"
DEFAULT_LIFETIME_SECONDS = 24 * 60 * 60
DEFAULT_AUTH_PATH = "/api/auth"

DEVELOPMENT_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
DEVELOPMENT_SUFFIXES = (".local", ".test", ".localhost")
STAGING_MARKERS = ("staging", "dev", "test")

# RFC 6265 cookie-name is an RFC 2616 token
_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9!#$%&'*+\-.^_`|~]")


class SameSite(str, Enum):
    STRICT = "Strict"
    LAX = "Lax"
    NONE = "None"

    @classmethod
    def parse(cls, value: Any) -> "SameSite":
        if isinstance(value, SameSite):
            return value
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        raise ConfigurationError(f"unknown SameSite value: {value!r}")


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass(frozen=True)
class CookiePolicy:
    enabled: bool = True
    name: str = DEFAULT_COOKIE_NAME
    samesite: SameSite = SameSite.LAX
    secure: bool = True
    httponly: bool = True
    path: str = "/"
    domain: Optional[str] = None
    lifetime: int = DEFAULT_LIFETIME_SECONDS
    environment: Environment = Environment.PRODUCTION

    def cookie_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie``/``delete_cookie``."""
        return {
            "key": self.name,
            "path": self.path,
            "domain": self.domain,
            "secure": self.secure,
            "httponly": self.httponly,
            "samesite": self.samesite.value.lower(),
        }


@dataclass(frozen=True)
class RequestContext:
    """What the resolver needs to know about the request. Built by the transport."""

    host: str
    is_https: bool = False
    origin: Optional[str] = None
    fetch_site: Optional[str] = None

    @classmethod
    def from_url(cls, url: str) -> "RequestContext":
        parsed = urllib.parse.urlparse(url)
        return cls(
            host=(parsed.hostname or "").lower(),
            is_https=parsed.scheme.lower() == "https",
        )


@dataclass(frozen=True)
class CookieOverrides:
    enabled: Optional[bool] = None
    name: Optional[str] = None
    samesite: Optional[SameSite] = None
    secure: Optional[bool] = None
    httponly: Optional[bool] = None
    path: Optional[str] = None
    domain: Optional[str] = None
    lifetime: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values = {k: v for k, v in values.items() if v is not None}
        if "samesite" in values:
            values["samesite"] = SameSite.parse(values["samesite"])
        return values


PolicyFilter = Callable[[CookiePolicy], CookiePolicy]
FieldFilter = Callable[[Any, CookiePolicy], Any]


@dataclass(frozen=True)
class ResolverConfig:
    overrides: CookieOverrides = field(default_factory=CookieOverrides)
    # Applied in order, whole-policy filters first
    filters: Tuple[PolicyFilter, ...] = ()
    field_filters: Tuple[Tuple[str, FieldFilter], ...] = ()
    debug: bool = False
    auth_path: str = DEFAULT_AUTH_PATH
    default_name: str = DEFAULT_COOKIE_NAME
    auto_detect: bool = True
    allow_insecure_httponly: bool = False


def _bare_host(host: str) -> str:
    host = (host or "").strip().lower()
    if host.startswith("["):
        return host[1:].split("]", 1)[0]
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def classify_environment(host: str, is_https: bool, debug: bool = False) -> Environment:
    """
    Guess the deployment environment from the request host.

    HTTPS does not change the classification, only the defaults derived from it.
    """
    host = _bare_host(host)
    if debug or host in DEVELOPMENT_HOSTS or host.endswith(DEVELOPMENT_SUFFIXES):
        return Environment.DEVELOPMENT
    if any(marker in host for marker in STAGING_MARKERS):
        return Environment.STAGING
    return Environment.PRODUCTION


def is_cross_site(context: RequestContext) -> bool:
    """
    Detect whether the cookie is used in a cross-site context.

    Priority:
    1) `Sec-Fetch-Site` (browser-provided signal)
    2) Compare `Origin` with the request scheme/host.
    """
    fetch_site = (context.fetch_site or "").strip().lower()
    if fetch_site == "cross-site":
        return True
    if fetch_site in {"same-site", "same-origin"}:
        return False

    origin = (context.origin or "").strip()
    if not origin:
        return False

    parsed_origin = urllib.parse.urlparse(origin)
    if not parsed_origin.scheme or not parsed_origin.hostname:
        return False

    request_scheme = "https" if context.is_https else "http"
    return (
        parsed_origin.scheme.lower() != request_scheme
        or parsed_origin.hostname.lower() != _bare_host(context.host)
    )


def environment_defaults(
    environment: Environment,
    context: RequestContext,
    auth_path: str = DEFAULT_AUTH_PATH,
) -> Dict[str, Any]:
    if environment == Environment.DEVELOPMENT:
        # SameSite=None is only valid with Secure, which needs HTTPS
        cross_site = context.is_https and is_cross_site(context)
        return {
            "samesite": SameSite.NONE if cross_site else SameSite.LAX,
            "secure": context.is_https,
            "path": "/",
        }
    if environment == Environment.STAGING:
        return {"samesite": SameSite.LAX, "secure": True, "path": "/"}
    return {"samesite": SameSite.STRICT, "secure": True, "path": auth_path}


def sanitize_cookie_name(name: Any) -> str:
    if not isinstance(name, str):
        return ""
    return _INVALID_NAME_CHARS.sub("", name)


def validate_policy(policy: CookiePolicy, config: ResolverConfig) -> CookiePolicy:
    """
    Check a merged policy.

    Raises:
        ConfigurationError: SameSite=None without Secure, HttpOnly disabled
            without the explicit debug override, or an unknown SameSite value
    """
    samesite = SameSite.parse(policy.samesite)
    secure = bool(policy.secure)

    if samesite == SameSite.NONE and not secure:
        raise ConfigurationError("SameSite=None cookies must be Secure")

    if not policy.httponly:
        if not config.allow_insecure_httponly:
            raise ConfigurationError("refresh token cookie must be HttpOnly")
        logger.warning(
            "SECURITY WARNING: refresh token cookie is readable by scripts "
            "(COOKIE_ALLOW_INSECURE_HTTPONLY is set)"
        )

    lifetime = policy.lifetime
    if isinstance(lifetime, bool) or not isinstance(lifetime, int) or lifetime <= 0:
        lifetime = DEFAULT_LIFETIME_SECONDS

    name = sanitize_cookie_name(policy.name)
    if not name:
        name = sanitize_cookie_name(config.default_name) or DEFAULT_COOKIE_NAME

    return replace(
        policy,
        samesite=samesite,
        secure=secure,
        httponly=bool(policy.httponly),
        lifetime=lifetime,
        name=name,
        path=policy.path or "/",
        domain=policy.domain or None,
    )


def resolve(context: RequestContext, config: ResolverConfig) -> CookiePolicy:
    environment = classify_environment(context.host, context.is_https, config.debug)

    values: Dict[str, Any] = {"name": config.default_name}
    if config.auto_detect:
        values.update(environment_defaults(environment, context, config.auth_path))

    overrides = config.overrides.as_dict()
    values.update(overrides)
    policy = CookiePolicy(environment=environment, **values)

    for policy_filter in config.filters:
        policy = policy_filter(policy)
    for field_name, field_filter in config.field_filters:
        policy = replace(policy, **{field_name: field_filter(getattr(policy, field_name), policy)})

    if overrides:
        policy = replace(policy, **overrides)

    return validate_policy(policy, config)


class CookiePolicyResolver:
    """Binds an immutable ``ResolverConfig``."""

    def __init__(self, config: Optional[ResolverConfig] = None):
        self.config = config or ResolverConfig()

    def resolve(self, context: RequestContext) -> CookiePolicy:
        return resolve(context, self.config)


def resolver_config_from_settings(
    settings,
    *,
    filters: Tuple[PolicyFilter, ...] = (),
    field_filters: Tuple[Tuple[str, FieldFilter], ...] = (),
) -> ResolverConfig:
    overrides = CookieOverrides(
        enabled=settings.COOKIE_ENABLED,
        name=settings.COOKIE_NAME,
        samesite=SameSite.parse(settings.COOKIE_SAMESITE) if settings.COOKIE_SAMESITE else None,
        secure=settings.COOKIE_SECURE,
        httponly=settings.COOKIE_HTTPONLY,
        path=settings.COOKIE_PATH,
        domain=settings.COOKIE_DOMAIN,
        lifetime=settings.COOKIE_LIFETIME,
    )
    return ResolverConfig(
        overrides=overrides,
        filters=tuple(filters),
        field_filters=tuple(field_filters),
        debug=settings.DEBUG,
        auth_path=settings.COOKIE_AUTH_PATH,
        auto_detect=settings.COOKIE_AUTO_DETECT,
        allow_insecure_httponly=settings.COOKIE_ALLOW_INSECURE_HTTPONLY,
    )
